# Gunicorn configuration for periodicbackup
# Only one worker may own the backup scheduler, otherwise every worker
# would start its own periodic backup.

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
timeout = 120


def post_fork(server, worker):
    """
    Called in each worker right after it is forked, before the app is loaded.

    The first worker (worker.age == 1, ages start at 1) runs APScheduler; the others only
    serve HTTP requests.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): backup scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP worker (scheduler disabled)")
