"""
Flask Application Factory
HTTP entry point for triggering and monitoring sync runs, plus the
background scheduler that runs them on a cron schedule.
"""

import os
from typing import Optional

from flask import Flask, current_app, jsonify
from flask_cors import CORS
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from blobdelta.config_manager import ConfigManager
from blobdelta.database.connection import DatabaseConnection, get_db
from blobdelta.sync.coordinator import OperatorMode, SyncCoordinator, build_coordinator, run_operator
from blobdelta.utils.helpers import utcnow
from blobdelta.utils.logger import setup_logging, get_logger


def create_app(db: Optional[DatabaseConnection] = None,
               coordinator: Optional[SyncCoordinator] = None,
               configure_logging: bool = True) -> Flask:
    """
    Application factory for Flask app.

    Args:
        db: Sync state database; defaults to the configured one
        coordinator: Coordinator used by the run endpoint; built lazily
            from configuration when omitted
        configure_logging: Set up logging handlers from configuration

    Returns:
        Configured Flask application
    """
    if configure_logging:
        setup_logging()
    logger = get_logger(__name__)

    app = Flask(__name__)

    app.config['SECRET_KEY'] = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['JSON_SORT_KEYS'] = False
    app.config['SYNC_DB'] = db
    app.config['SYNC_COORDINATOR'] = coordinator

    CORS(app)

    from blobdelta.api.sync_routes import sync_bp
    app.register_blueprint(sync_bp)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        db_healthy = (current_app.config.get('SYNC_DB') or get_db()).check_connection()

        return jsonify({
            'status': 'healthy' if db_healthy else 'degraded',
            'timestamp': utcnow().isoformat(),
            'database': 'connected' if db_healthy else 'disconnected'
        })

    @app.route('/', methods=['GET'])
    def root():
        """Root endpoint with API info."""
        return jsonify({
            'name': 'Blob Delta Sync API',
            'version': '1.0.0',
            'endpoints': {
                '/health': 'Health check',
                '/api/sync/run': 'Trigger Delta run (POST)',
                '/api/sync/runs': 'Recent runs (GET)',
                '/api/sync/runs/<run_id>': 'Run progress (GET)',
                '/api/sync/watermarks': 'Watermarks and leases (GET)',
                '/api/sync/queue/<run_id>': 'Missing-parent queue depth (GET)'
            }
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not found'
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({
            'success': False,
            'error': 'Internal server error'
        }), 500

    logger.info("Flask application created")

    return app


def create_scheduler(coordinator: Optional[SyncCoordinator] = None) -> BackgroundScheduler:
    """
    Create and configure the background scheduler.

    Args:
        coordinator: Coordinator for the scheduled runs; built from
            configuration when omitted

    Returns:
        Configured scheduler
    """
    logger = get_logger(__name__)
    config = ConfigManager()
    scheduler_config = config.get_scheduler_config()

    scheduler = BackgroundScheduler()

    if not scheduler_config.get('enabled', True):
        logger.info("Scheduler is disabled")
        return scheduler

    sync_schedule = scheduler_config.get('sync_schedule', '0 */4 * * *')  # Default: every 4 hours

    @scheduler.scheduled_job(CronTrigger.from_crontab(sync_schedule), id='delta_sync',
                             max_instances=1, coalesce=True)
    def scheduled_sync():
        """Scheduled Delta run over all active tables."""
        logger.info("Running scheduled sync")
        try:
            run_id = run_operator(
                coordinator or build_coordinator(),
                OperatorMode.ALL_TABLES,
                batch_size=config.get_batch_size(),
                max_parallelism=config.get_max_parallelism(),
                tenant_id=scheduler_config.get('tenant_id') or None,
                requested_by='scheduler',
            )
            logger.info(f"Scheduled sync completed: run {run_id}")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")

    return scheduler


if __name__ == '__main__':
    # Development server
    app = create_app()
    scheduler = create_scheduler()
    scheduler.start()

    try:
        app.run(
            host=ConfigManager().get_api_config().get('host', '0.0.0.0'),
            port=int(os.getenv('FLASK_PORT', ConfigManager().get_api_config().get('port', 6922))),
            debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
        )
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
