# Gunicorn configuration for Backvault
# Exactly one worker owns the scheduler (and with it the backup queue)

import os
import logging
import tempfile

from backvault.utils.locks import acquire_exclusive_lock, release_lock

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 1))

# Uploads to slow destinations keep the scheduler worker busy for a long time
timeout = 120

SCHEDULER_LOCK_FILE = os.environ.get(
    'SCHEDULER_LOCK_FILE',
    os.path.join(tempfile.gettempdir(), 'backvault-scheduler.lock')
)


def post_fork(server, worker):
    """
    Called in the worker right after fork, before the app is loaded.

    The worker that takes the scheduler lock owns APScheduler, so backups
    never run twice. The kernel drops the lock when the owner dies and the
    replacement worker picks it up. Other workers leave manual runs pending
    for the owner's dispatch job.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance
    """
    worker.scheduler_lock = acquire_exclusive_lock(SCHEDULER_LOCK_FILE)

    if worker.scheduler_lock is not None:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): designated scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP worker, scheduler disabled")


def worker_exit(server, worker):
    release_lock(getattr(worker, 'scheduler_lock', None))
