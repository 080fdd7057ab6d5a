"""Run the liveness demo server: ``python -m liveness_demo``."""
from __future__ import annotations

import argparse

import uvicorn

from .config import get_settings
from .main import create_app


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Camera liveness check demo")
    parser.add_argument("--host", default=settings.controller_host)
    parser.add_argument("--port", type=int, default=settings.controller_port)
    args = parser.parse_args()

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
