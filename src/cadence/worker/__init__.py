"""Celery worker: durable execution of queued actions."""
