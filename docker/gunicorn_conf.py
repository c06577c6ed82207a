# Gunicorn configuration for vmkuper
# Only one worker owns the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '0.0.0.0:5000')
workers = int(os.environ.get('WORKERS', '2'))
wsgi_app = 'vmkuper:create_app()'


def post_fork(server, worker):
    """
    Designate the first spawned worker (worker.age == 1) as the scheduler owner.

    Runs before the worker loads the app. create_app() reads SCHEDULER_WORKER,
    so only this worker schedules nightly backup runs.
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP worker (scheduler disabled)")
