"""
HTTP trigger service for the background worker.

Endpoints:
    POST /trigger/<task>  - Run one processor invocation (cron only)
    GET /health           - Liveness check

Environment:
    VERA_CRON_SECRET: Shared secret expected in the x-cron-secret header
    PORT: Listen port (default 8080)
"""
import datetime
import hmac
import logging
import os

from flask import Flask, jsonify, request

from veraworker.config import WorkerConfig
from veraworker.delivery import LoggingMailer, Mailer
from veraworker.schema import ensure_database_ready
from veraworker.store import SqlStore, Store
from veraworker.tasks import TASKS, run_task

logger = logging.getLogger(__name__)

SERVICE_NAME = 'vera-worker'


def _timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def verify_cron_secret(expected: str | None) -> bool:
    """Check the x-cron-secret header. An unset secret rejects every call.
    """
    if not expected:
        return False
    provided = request.headers.get('x-cron-secret', '')
    return hmac.compare_digest(provided.encode(), expected.encode())


def create_app(store: Store, config: WorkerConfig, mailer: Mailer = None) -> Flask:
    """Build the trigger service around an explicit store.
    """
    app = Flask(__name__)
    mailer = mailer or LoggingMailer()

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({'status': 'ok', 'service': SERVICE_NAME, 'timestamp': _timestamp()})

    @app.route('/trigger/<task>', methods=['POST'])
    def trigger_task(task: str):
        """Run the processor registered for task and report its timing.
        """
        if not verify_cron_secret(config.cron_secret):
            return jsonify({'error': 'Unauthorized'}), 401

        if task not in TASKS:
            return jsonify({'error': f'Unknown task: {task}'}), 400

        started_at = _timestamp()
        try:
            run_task(task, store, config, mailer)
        except Exception as e:
            logger.exception(f'Task {task} failed: {e}')
            return jsonify({
                'error': f'Task failed: {e}',
                'task': task,
                'startedAt': started_at,
                'completedAt': _timestamp()
            }), 500

        return jsonify({
            'success': True,
            'task': task,
            'startedAt': started_at,
            'completedAt': _timestamp()
        })

    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    config = WorkerConfig.from_env().validate()
    if not config.cron_secret:
        logger.warning('VERA_CRON_SECRET is not set; every trigger call will be rejected')

    store = SqlStore.from_config(config)
    ensure_database_ready(store.engine, config.appname)

    port = int(os.getenv('PORT', '8080'))
    logger.info(f'{SERVICE_NAME} running on port {port}')
    create_app(store, config).run(host='0.0.0.0', port=port)


if __name__ == '__main__':
    main()
