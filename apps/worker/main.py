"""
Celery worker entry point for commitpulse.

Runs bulk commit jobs (backfill, streak maintenance, pattern) and
on-demand scheduler passes enqueued by the API. Start with:

    celery -A main worker --loglevel=info
"""
import os
import sys

# The API package root is mounted at /api in the worker image
sys.path.insert(0, os.getenv("COMMITPULSE_API_PATH", "/api"))

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()

celery_app.autodiscover_tasks(["tasks"])


@celery_app.task(name="worker.health_check")
def health_check():
    """Report liveness and which commit tasks this worker can run."""
    registered = sorted(name for name in celery_app.tasks if name.startswith("tasks."))
    return {"status": "ok", "tasks": registered}
