#!/usr/bin/env python3
"""
Serve the authorization registry HTTP API with uvicorn.
"""

import argparse
import sys

import uvicorn

from assetgate.core.config import DB_PATH, ensure_db_directory
from assetgate.core.db import init_db


def main():
    """Main entry point for the registry server."""
    parser = argparse.ArgumentParser(description="Run the asset authorization registry API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    args = parser.parse_args()

    try:
        ensure_db_directory(DB_PATH)
        init_db(DB_PATH)
        print(f"🗄️  Registry database: {DB_PATH}")
        uvicorn.run("assetgate.api.main:app", host=args.host, port=args.port, reload=args.reload)
    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
    except Exception as e:
        print(f"💥 Critical error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
