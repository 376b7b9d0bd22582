"""CLI entry-point for devicestore maintenance.

Usage examples::

    # Describe the configured database and its tables
    python -m devicestore info

    # Evict expired rows from the configured cache tables (or just one)
    python -m devicestore evict
    python -m devicestore evict --table Cache

    # Table lifecycle
    python -m devicestore create Cache "CREATE TABLE Cache (id INTEGER PRIMARY KEY, ts BIGINT, val VARCHAR)"
    python -m devicestore empty Cache
    python -m devicestore drop Cache
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from devicestore.config import get_settings
from devicestore.db import Storage


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devicestore", description="devicestore maintenance CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("info", help="Show database state and table row counts")

    evict = sub.add_parser("evict", help="Delete expired rows from cache tables")
    evict.add_argument("--table", action="append", help="Cache table to sweep (repeatable)")

    create = sub.add_parser("create", help="Create a table from a CREATE TABLE statement")
    create.add_argument("name")
    create.add_argument("sql")
    create.add_argument("--cache-column", help="Register the table as a cache table keyed on this column")

    for command, text in (("drop", "Drop a table if it exists"), ("empty", "Delete all rows of a table")):
        p = sub.add_parser(command, help=text)
        p.add_argument("name")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    args = _build_parser().parse_args(argv)

    storage = Storage.from_settings(settings)
    prepared = storage.prepare_on_launch()
    if not prepared.ok:
        print(json.dumps(prepared.to_dict(), indent=2), file=sys.stderr)
        return 1

    with storage:
        if args.command == "info":
            print(json.dumps(storage.info(), indent=2, default=str))
            return 0
        if args.command == "evict":
            result = storage.evict_expired_cache_rows(args.table)
        elif args.command == "create":
            result = storage.create_table(args.name, args.sql, cache_timestamp_column=args.cache_column)
        elif args.command == "drop":
            result = storage.drop_table(args.name)
        else:
            result = storage.empty_table(args.name)

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
