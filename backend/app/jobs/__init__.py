"""Background jobs: Celery app, task definitions and the enqueue facade."""
