from celery import Celery

# Create Celery app for the deadline and escalation jobs
celery = Celery("qa_deadlines")

# Load configuration from app.config.celeryconfig module
celery.config_from_object("app.config.celeryconfig")
