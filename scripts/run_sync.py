#!/usr/bin/env python
"""
Run Sync Script
Command-line script for running, resuming, resetting and previewing sync runs.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from blobdelta.utils.logger import setup_logging, get_logger
from blobdelta.config_manager import ConfigManager
from blobdelta.database.connection import get_db
from blobdelta.database.models import RunType
from blobdelta.database.queries import SyncQueries
from blobdelta.sync.coordinator import OperatorMode, SyncRequest, build_coordinator, run_operator
from blobdelta.sync.exceptions import SyncError
from blobdelta.sync.observability import LoggingSink


def build_parser(config: ConfigManager) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Run the blob delta sync engine')
    parser.add_argument(
        '--table',
        help='Process a single table (default: all active tables)'
    )
    parser.add_argument(
        '--group',
        help='Only process tables of this target group'
    )
    parser.add_argument(
        '--full',
        action='store_true',
        help='Full run from the baseline instead of a Delta run'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Report planned operations without changing anything'
    )
    parser.add_argument(
        '--resume',
        metavar='RUN_ID',
        help='Resume an interrupted run'
    )
    parser.add_argument(
        '--reset',
        action='store_true',
        help='Discard progress of the run for the selected tables before running'
    )
    parser.add_argument(
        '--tenant',
        help='Only copy records owned by this tenant'
    )
    parser.add_argument(
        '--batch-size',
        type=int,
        default=config.get_batch_size(),
        help='Records per batch'
    )
    parser.add_argument(
        '--max-parallelism',
        type=int,
        default=config.get_max_parallelism(),
        help='Statement parallelism for the Roots phase'
    )
    parser.add_argument(
        '--operator',
        choices=OperatorMode.ALL,
        help='Run through the operator wrapper (Delta, no reset) in this mode'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Override the configured log level'
    )
    return parser


def main():
    """Main entry point for the sync script."""
    config = ConfigManager()
    args = build_parser(config).parse_args()

    if args.full and args.dry_run:
        print("Error: --full and --dry-run are mutually exclusive")
        sys.exit(2)

    # Setup logging
    setup_logging(args.log_level)
    logger = get_logger(__name__)

    sink = LoggingSink()
    coordinator = build_coordinator(sink=sink)

    try:
        if args.operator:
            run_id = run_operator(
                coordinator,
                args.operator,
                table_name=args.table,
                batch_size=args.batch_size,
                max_parallelism=args.max_parallelism,
                tenant_id=args.tenant,
                requested_by='cli',
            )
        else:
            run_type = RunType.FULL if args.full else RunType.DRY_RUN if args.dry_run else RunType.DELTA
            logger.info(f"Starting {run_type} run: table={args.table or 'all'} resume={args.resume}")
            run_id = coordinator.run_sync(SyncRequest(
                run_type=run_type,
                table_name=args.table,
                target_group=args.group,
                batch_size=args.batch_size,
                max_parallelism=args.max_parallelism,
                reset=args.reset,
                tenant_id=args.tenant,
                run_id=args.resume,
                requested_by='cli',
            ))

    except SyncError as e:
        logger.error(f"Sync failed: {e.message}")
        print(f"\nError: {e.message}")
        sys.exit(1)

    print(f"\n{'='*50}")
    print("Sync Run Complete")
    print(f"{'='*50}")
    print(f"Run ID: {run_id}")

    if args.dry_run:
        print("Planned operations:")
        for operation in sink.operations:
            print(f"  {operation.describe()}")
        return

    with get_db().session_scope() as session:
        run = SyncQueries(session).get_run(run_id)

    print(f"Status: {run['status']}")
    print(f"Duration: {run['duration_seconds'] or 0:.2f}s")
    for table_name, phases in run['tables'].items():
        print(f"\n{table_name}")
        for phase in phases:
            print(f"  {phase['label']:<15} {phase['status']:<11} {phase['total_rows']} rows in {phase['batches']} batches")


if __name__ == '__main__':
    main()
