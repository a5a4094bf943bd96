"""
Gateway server entry point.

    marketplace-serve --port 8000
    marketplace-serve --init-db      # create tables, then serve
"""
import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from marketplace.core.database import create_all_tables

logger = logging.getLogger("marketplace")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the marketplace entitlement gateway")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--init-db", action="store_true", help="Create missing tables before serving")
    parser.add_argument("--init-db-only", action="store_true", help="Create missing tables and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.init_db or args.init_db_only:
        create_all_tables()
        logger.info("[serve] tables ready")
        if args.init_db_only:
            return 0

    uvicorn.run(
        "marketplace.main:app",
        host=args.host,
        port=args.port,
        reload=False,
        log_level="info",
        access_log=True,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
