#!/usr/bin/env python3
"""
Quick runner for Orbit Lite
===========================

Usage:
    python -m orbit_lite.run
    python -m orbit_lite.run --port 9000 --reload
"""

import argparse
import logging

import uvicorn

from .config import get_settings


def main():
    parser = argparse.ArgumentParser(description="Run the Orbit Lite API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("Starting Orbit Lite...")
    print(f"Data dir: {settings.data_dir}")
    print(f"API docs: http://{args.host}:{args.port}/docs")
    print()

    uvicorn.run(
        "orbit_lite.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
