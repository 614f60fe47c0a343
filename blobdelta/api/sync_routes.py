"""
Sync API Blueprint
Provides REST endpoints for triggering and monitoring sync runs.
"""

from flask import Blueprint, current_app, jsonify, request

from blobdelta.config_manager import ConfigManager
from blobdelta.database.connection import DatabaseConnection, get_db
from blobdelta.database.queries import SyncQueries
from blobdelta.sync.coordinator import OperatorMode, SyncCoordinator, build_coordinator, run_operator
from blobdelta.sync.exceptions import ConfigurationError, SyncError
from blobdelta.utils.helpers import parse_datetime
from blobdelta.utils.logger import get_logger

logger = get_logger(__name__)

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')


def _db() -> DatabaseConnection:
    return current_app.config.get('SYNC_DB') or get_db()


def _coordinator() -> SyncCoordinator:
    coordinator = current_app.config.get('SYNC_COORDINATOR')
    if coordinator is None:
        coordinator = build_coordinator(db=_db())
        current_app.config['SYNC_COORDINATOR'] = coordinator
    return coordinator


@sync_bp.route('/run', methods=['POST'])
def trigger_sync():
    """
    Trigger a Delta run.

    JSON body (all optional):
        mode: 'AllTables' (default) or 'SingleTable'
        table_name: required for SingleTable
        batch_size, max_parallelism: override configured defaults
        tenant_id: only copy records owned by this tenant

    Returns:
        JSON with run ID and final status
    """
    payload = request.get_json(silent=True) or {}
    config = ConfigManager()

    try:
        mode = payload.get('mode', OperatorMode.ALL_TABLES)
        batch_size = int(payload.get('batch_size', config.get_batch_size()))
        max_parallelism = int(payload.get('max_parallelism', config.get_max_parallelism()))
    except (TypeError, ValueError) as e:
        return jsonify({'success': False, 'error': f"Invalid parameter: {e}"}), 400

    logger.info(f"Sync triggered via API: mode={mode} table={payload.get('table_name')}")

    try:
        run_id = run_operator(
            _coordinator(),
            mode,
            table_name=payload.get('table_name'),
            batch_size=batch_size,
            max_parallelism=max_parallelism,
            tenant_id=payload.get('tenant_id'),
            requested_by=payload.get('requested_by') or 'api',
        )
    except ConfigurationError as e:
        return jsonify({'success': False, 'error': e.message}), 400
    except SyncError as e:
        logger.error(f"Sync run failed: {e}")
        return jsonify({'success': False, 'error': e.message, 'table_name': e.table_name}), 500
    except Exception as e:
        logger.error(f"Sync run failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

    with _db().session_scope() as session:
        run = SyncQueries(session).get_run(run_id)

    return jsonify({'success': True, 'run_id': run_id, 'status': run['status'] if run else None})


@sync_bp.route('/runs', methods=['GET'])
def list_runs():
    """
    Recent runs.

    Query params:
        limit: Number of runs to return (default 10)
        status: Optional status filter
        since: Optional ISO 8601 timestamp; only runs started at or after it
    """
    since = parse_datetime(request.args.get('since'))
    if request.args.get('since') and since is None:
        return jsonify({'success': False, 'error': 'Invalid since timestamp'}), 400

    try:
        limit = int(request.args.get('limit', 10))
        with _db().session_scope() as session:
            runs = SyncQueries(session).get_recent_runs(
                limit=limit, status=request.args.get('status'), since=since
            )

        return jsonify({'success': True, 'runs': runs})

    except Exception as e:
        logger.error(f"Failed to list runs: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/runs/<run_id>', methods=['GET'])
def get_run(run_id: str):
    """Run details with per-table, per-phase progress."""
    try:
        with _db().session_scope() as session:
            run = SyncQueries(session).get_run(run_id)

        if run is None:
            return jsonify({'success': False, 'error': 'Run not found'}), 404

        return jsonify({'success': True, 'run': run})

    except Exception as e:
        logger.error(f"Failed to get run {run_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/watermarks', methods=['GET'])
def list_watermarks():
    """Watermarks, lease state and staleness per table."""
    try:
        with _db().session_scope() as session:
            watermarks = SyncQueries(session).get_watermarks()

        return jsonify({'success': True, 'watermarks': watermarks})

    except Exception as e:
        logger.error(f"Failed to list watermarks: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/queue/<run_id>', methods=['GET'])
def queue_depth(run_id: str):
    """Missing-parent queue depth per table for a run."""
    try:
        with _db().session_scope() as session:
            tables = SyncQueries(session).get_queue_depth(run_id)

        return jsonify({'success': True, 'run_id': run_id, 'tables': tables})

    except Exception as e:
        logger.error(f"Failed to get queue depth for {run_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
