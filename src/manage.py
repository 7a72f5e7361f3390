"""Billing database management CLI.

Usage:
    PROTEAN_ENV=production python src/manage.py setup-db   # Create all tables
    PROTEAN_ENV=production python src/manage.py drop-db    # Drop all tables
"""

import argparse
import sys

from billing.domain import billing
from billing.utils.db import drop_db, setup_db


def main():
    parser = argparse.ArgumentParser(description="Billing database management")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("setup-db", help="Create all database tables")
    subparsers.add_parser("drop-db", help="Drop all database tables")
    args = parser.parse_args()

    billing.init()
    if args.command == "setup-db":
        providers = setup_db(billing)
        print(f"Schema ready on: {', '.join(providers) or 'no SQL providers configured'}")
    elif args.command == "drop-db":
        providers = drop_db(billing)
        print(f"Schema dropped on: {', '.join(providers) or 'no SQL providers configured'}")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
