"""Background work for the onboarding service: Celery app, tasks and the job status routes."""
