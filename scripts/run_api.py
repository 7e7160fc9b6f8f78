#!/usr/bin/env python3
"""
Serve the classification correction API with uvicorn.
"""

import argparse

import uvicorn

from correction_sync.api import create_app
from correction_sync.core.config import DB_PATH, validate_sync_config
from correction_sync.core.record_store import SqliteRecordStore

from util.logging import logger


def main():
    parser = argparse.ArgumentParser(description='Serve the classification correction API')
    parser.add_argument('--host', default='127.0.0.1',
                        help='Host to bind to (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=8000,
                        help='Port to serve on (default: 8000)')
    parser.add_argument('--db', default=DB_PATH,
                        help=f'SQLite database path (default: {DB_PATH})')

    args = parser.parse_args()

    for issue in validate_sync_config():
        logger.warning(f"Configuration issue: {issue}")

    app = create_app(SqliteRecordStore(args.db))
    logger.info(f"Serving correction API on http://{args.host}:{args.port} (db: {args.db})")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
