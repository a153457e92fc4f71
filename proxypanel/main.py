from __future__ import annotations

import argparse
import asyncio
import sys

from pydantic import ValidationError

from proxypanel.api_client import ProxyApiClient
from proxypanel.config import (
    build_startup_config,
    get_config_path,
    get_log_dir,
    get_settings,
    load_config,
    save_config,
)
from proxypanel.coordinator import CoordinationLoop
from proxypanel.errors import ConfigError
from proxypanel.logger import get_logger, setup_logging
from proxypanel.state import Preset

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="proxypanel", description="Terminal control panel for a Clash-compatible proxy daemon")
    parser.add_argument("--api-url", help="external controller URL, e.g. http://127.0.0.1:9090")
    parser.add_argument("--secret", help="external controller secret")
    parser.add_argument("--preset", choices=[preset.value for preset in Preset], help="interface preset")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--test", action="store_true", help="check the daemon connection and exit")
    return parser


async def _check_daemon(client: ProxyApiClient) -> bool:
    try:
        return await client.check_connection()
    finally:
        await client.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        config_path = get_config_path()
        panel_config = load_config(config_path)
        panel_config.merge_cli(preset=args.preset)
        startup = build_startup_config(panel_config, settings, api_url=args.api_url, secret=args.secret)
        panel_config.merge_cli(api_url=args.api_url, secret=args.secret)
        if args.api_url or args.secret is not None or args.preset:
            save_config(panel_config, config_path)
    except (ConfigError, ValidationError) as exc:
        print(f"proxypanel: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except OSError as exc:
        print(f"proxypanel: cannot access {get_config_path()}: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    log_dir = get_log_dir()
    setup_logging(log_dir, level=args.log_level or settings.log_level, console=args.test)
    logger = get_logger("main")
    logger.info(
        "panel_starting",
        extra={"api_url": startup.api_url, "preset": startup.preset.value, "test": args.test},
    )

    client = ProxyApiClient(
        startup.api_url,
        secret=startup.secret,
        timeout=settings.request_timeout_sec,
        logger=get_logger("api"),
        probe_url=settings.probe_url,
    )

    if args.test:
        if asyncio.run(_check_daemon(client)):
            print(f"Connected to {startup.api_url}")
            return EXIT_OK
        print(f"Cannot reach {startup.api_url}", file=sys.stderr)
        return EXIT_FAILURE

    from proxypanel.ui.app import run_ui

    coordinator = CoordinationLoop(
        startup,
        panel_config,
        client,
        settings=settings,
        logger=get_logger("coordinator"),
        config_path=config_path,
    )
    try:
        return run_ui(coordinator, log_dir)
    except Exception:
        logger.exception("panel_crashed")
        print(f"proxypanel: terminal failure, see {log_dir}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
