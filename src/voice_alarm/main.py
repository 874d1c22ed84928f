from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from voice_alarm.app.server import ServerRunner
from voice_alarm.app.wiring import (
    DEEPGRAM_API_KEY,
    DEEPGRAM_API_KEY_ENV,
    create_secret_store,
    require_secret,
)
from voice_alarm.config.logging_setup import setup_logging
from voice_alarm.config.paths import default_settings_path, resolve_relative
from voice_alarm.config.settings import (
    AppSettings,
    SecretsBackend,
    apply_env_overrides,
    load_settings,
    save_settings,
)
from voice_alarm.core.storage.secrets import mask_secret
from voice_alarm.core.stt.backend import BackendVariant
from voice_alarm.providers.stt.deepgram import verify_api_key

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voice-alarm")
    parser.add_argument("--version", action="store_true", help="Print version and exit")

    parser.add_argument(
        "--config",
        type=Path,
        default=default_settings_path(),
        help="Path to settings JSON (default: user config dir)",
    )

    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the device streaming server")
    serve.add_argument("--host", help="Bind address (overrides settings and HOST)")
    serve.add_argument("--port", type=int, help="Bind port (overrides settings and PORT)")
    serve.add_argument(
        "--backend",
        choices=[v.value for v in BackendVariant],
        help="Transcription backend variant",
    )

    sub.add_parser("verify-key", help="Check that the Deepgram API key is accepted")

    store = sub.add_parser("store-key", help="Save the Deepgram API key in the configured secrets store")
    store.add_argument("--value", help="API key (default: read one line from stdin)")
    store.add_argument("--clear", action="store_true", help="Remove the stored key instead")

    init = sub.add_parser("init-config", help="Write a default settings file")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from . import __version__

        print(__version__)
        return 0

    if args.command == "init-config":
        if args.config.exists() and not args.force:
            print(f"Error: {args.config} already exists (use --force to overwrite)", flush=True)
            return 2
        save_settings(args.config, AppSettings())
        print(f"Wrote default settings to {args.config}")
        return 0

    try:
        settings = apply_env_overrides(_load_settings_or_default(args.config))
    except (OSError, ValueError) as exc:
        print(f"Error: invalid configuration: {exc}", flush=True)
        return 2

    log_file = (
        resolve_relative(settings.logging.file, config_path=args.config)
        if settings.logging.file
        else None
    )
    setup_logging(
        settings.logging.level,
        log_file=log_file,
        max_bytes=settings.logging.max_bytes,
        backup_count=settings.logging.backup_count,
    )

    if args.command == "store-key":
        if settings.secrets.backend == SecretsBackend.ENV:
            print(
                f"Error: the env secrets backend cannot store keys; export {DEEPGRAM_API_KEY_ENV} instead",
                flush=True,
            )
            return 2
        try:
            secrets = create_secret_store(settings.secrets, config_path=args.config)
            if args.clear:
                secrets.delete(DEEPGRAM_API_KEY)
                print(f"Removed stored Deepgram API key ({settings.secrets.backend.value})")
                return 0
            api_key = (args.value if args.value is not None else sys.stdin.readline()).strip()
            if not api_key:
                print("Error: empty API key", flush=True)
                return 2
            secrets.set(DEEPGRAM_API_KEY, api_key)
        except Exception as exc:
            print(f"Error: {exc}", flush=True)
            return 2
        print(f"Stored Deepgram API key {mask_secret(api_key)} ({settings.secrets.backend.value})")
        return 0

    if args.command == "verify-key":
        try:
            secrets = create_secret_store(settings.secrets, config_path=args.config)
            api_key = require_secret(secrets, key=DEEPGRAM_API_KEY, env_var=DEEPGRAM_API_KEY_ENV)
        except Exception as exc:
            print(f"Error: {exc}", flush=True)
            return 2
        print(f"Testing Deepgram API key {mask_secret(api_key)} ...")
        try:
            ok = asyncio.run(verify_api_key(api_key))
        except Exception as exc:
            print(f"Error: {exc}", flush=True)
            return 1
        print("API key is valid" if ok else "API key was rejected")
        return 0 if ok else 1

    if args.command == "serve":
        if args.host:
            settings.server.host = args.host
        if args.port is not None:
            settings.server.port = args.port
        if args.backend:
            settings.transcription.backend = BackendVariant(args.backend)
        try:
            settings.validate()
        except ValueError as exc:
            print(f"Error: invalid configuration: {exc}", flush=True)
            return 2

        runner = ServerRunner(settings=settings, config_path=args.config)
        try:
            return asyncio.run(runner.run())
        except ValueError as exc:
            print(f"Error: failed to start server: {exc}", flush=True)
            return 2
        except KeyboardInterrupt:
            return 0

    parser.print_help()
    return 2


def _load_settings_or_default(path: Path) -> AppSettings:
    if path.exists():
        return load_settings(path)
    return AppSettings()


if __name__ == "__main__":
    raise SystemExit(main())
