"""
Gunicorn config. Ensures the decode worker thread is started in each
worker process (post_fork). With --workers 2, two processes each run one
worker thread that polls the SQLite job queue.
"""

import logging


def post_fork(server, worker):
    """Start the async decode worker in this gunicorn worker process."""
    try:
        from worker import start_worker
        start_worker()
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to start decode worker: %s", e)
