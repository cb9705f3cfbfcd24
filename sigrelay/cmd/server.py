from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from sigrelay.server.runtime import RelayRuntime

log = logging.getLogger("sigrelay.cmd.server")

DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_PORT = 8000


def load_config(path: Optional[Path], environ: Mapping[str, str] = os.environ) -> Dict[str, Any]:
    """YAML file (optional) overlaid with environment variables."""

    config: Dict[str, Any] = {}
    if path is not None:
        config = yaml.safe_load(Path(path).read_text()) or {}

    if environ.get("PORT"):
        host = str(config.get("listen", f"{DEFAULT_LISTEN_HOST}:{DEFAULT_PORT}")).rsplit(":", 1)[0]
        config["listen"] = f"{host}:{int(environ['PORT'])}"
    if environ.get("SIGRELAY_DB_PATH"):
        config["db_path"] = environ["SIGRELAY_DB_PATH"]
    if environ.get("SIGRELAY_STATIC_DIR"):
        config["static_dir"] = environ["SIGRELAY_STATIC_DIR"]
    if environ.get("SIGRELAY_LOG_LEVEL"):
        config["log_level"] = environ["SIGRELAY_LOG_LEVEL"]

    twilio = dict(config.get("twilio") or {})
    if environ.get("TWILIO_ACCOUNT_SID"):
        twilio["account_sid"] = environ["TWILIO_ACCOUNT_SID"]
    if environ.get("TWILIO_AUTH_TOKEN"):
        twilio["auth_token"] = environ["TWILIO_AUTH_TOKEN"]
    config["twilio"] = twilio
    return config


async def _run(config: Dict[str, Any]) -> None:
    runtime = RelayRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="WebSocket signaling relay with store-and-forward queue")
    parser.add_argument("--config", help="Path to server YAML config")
    parser.add_argument("--port", type=int, help="Listening port (overrides config and PORT)")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, ...)")
    args = parser.parse_args(argv)

    config = load_config(Path(args.config) if args.config else None)
    if args.port is not None:
        host = str(config.get("listen", f"{DEFAULT_LISTEN_HOST}:{DEFAULT_PORT}")).rsplit(":", 1)[0]
        config["listen"] = f"{host}:{args.port}"

    level = str(args.log_level or config.get("log_level", "INFO")).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
