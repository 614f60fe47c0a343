#!/usr/bin/env python
"""
Initialize Database Script
Creates the sync state schema and seeds table configurations from config.yaml.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from blobdelta.utils.logger import setup_logging, get_logger
from blobdelta.database.connection import get_db
from blobdelta.database.models import Base
from blobdelta.config_manager import ConfigManager
from blobdelta.sync.catalog import TableCatalog


def main():
    """Main entry point for database initialization."""
    parser = argparse.ArgumentParser(description='Initialize sync state schema')
    parser.add_argument(
        '--drop',
        action='store_true',
        help='Drop existing sync state tables before creating (DANGEROUS)'
    )
    parser.add_argument(
        '--no-seed',
        action='store_true',
        help='Do not load table configurations from config.yaml'
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    try:
        logger.info("Initializing database")

        db = get_db()
        engine = db.engine

        # Check connection
        if not db.check_connection():
            print("Error: Cannot connect to database")
            sys.exit(1)

        print("Database connection successful")

        if args.drop:
            confirm = input("Are you sure you want to drop all sync state tables? (yes/no): ")
            if confirm.lower() == 'yes':
                logger.warning("Dropping sync state tables")
                Base.metadata.drop_all(engine)
                print("All sync state tables dropped")
            else:
                print("Cancelled")
                sys.exit(0)

        # Create tables
        logger.info("Creating tables")
        db.create_schema()

        seeded = 0
        if not args.no_seed:
            definitions = ConfigManager().get_table_definitions()
            seeded = TableCatalog(db).seed_from_config(definitions)

        print(f"\n{'='*50}")
        print("Database Initialized Successfully")
        print(f"{'='*50}")

        tables = [t for t in inspect(engine).get_table_names() if t in Base.metadata.tables]
        print(f"\nTables created: {len(tables)}")
        for table in sorted(tables):
            print(f"  - {table}")
        print(f"Table configurations seeded: {seeded}")

        db.dispose()

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
