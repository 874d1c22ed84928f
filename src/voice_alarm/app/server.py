from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import uvicorn

from voice_alarm.app.api import create_app
from voice_alarm.app.wiring import create_secret_store, create_services
from voice_alarm.config.settings import AppSettings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServerRunner:
    settings: AppSettings
    config_path: Path

    async def run(self) -> int:
        secrets = create_secret_store(self.settings.secrets, config_path=self.config_path)
        services = create_services(self.settings, secrets=secrets)
        app = create_app(services)

        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=self.settings.server.host,
                port=self.settings.server.port,
                log_config=None,
                ws_max_size=1024 * 1024,
            )
        )
        logger.info(
            f"[Server] Listening on {self.settings.server.host}:{self.settings.server.port} "
            f"(backend={self.settings.transcription.backend.value}, "
            f"auth={'token' if self.settings.server.device_token else 'open'})"
        )
        await server.serve()
        return 0
