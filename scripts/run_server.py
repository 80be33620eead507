#!/usr/bin/env python3
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import argparse

import uvicorn

from broker.main import create_app
from broker.settings import BrokerSettings, configure_logging


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the job broker HTTP server.")
    parser.add_argument("--host", default=None, help="Bind address (defaults to HOST).")
    parser.add_argument("--port", type=int, default=None, help="Bind port (defaults to PORT).")
    args = parser.parse_args()

    settings = BrokerSettings.from_env()
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
