from __future__ import annotations

import argparse

import uvicorn

from .config import get_settings


def main() -> None:
    """Run the relay under uvicorn; defaults come from HOST / PORT."""
    settings = get_settings()

    parser = argparse.ArgumentParser(prog="sms-relay")
    parser.add_argument("--host", type=str, default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true", help="auto-reload on code changes (dev only)")
    args = parser.parse_args()

    uvicorn.run(
        "sms_relay.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
