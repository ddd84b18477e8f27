#!/usr/bin/env python3
"""
Celery configuration for the table fetch planner
Fetch cycles run as tasks; generated queries are dispatched as task messages
"""

import os
from celery import Celery


class CeleryConfig:
    # Broker settings
    broker_url = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
    result_backend = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

    # Task settings
    task_serializer = 'json'
    accept_content = ['json']
    result_serializer = 'json'
    timezone = 'UTC'
    enable_utc = True

    # Planning tasks and extraction messages travel on separate queues
    task_routes = {
        'tablefetch.tasks.*': {'queue': 'fetch_planning'},
        'tablefetch.extract_fragment': {'queue': 'extract_queries'},
    }

    # Worker settings
    worker_prefetch_multiplier = 1  # Only take one task at a time
    task_acks_late = True  # Acknowledge task only after completion

    # Task result settings
    result_expires = 3600  # Results expire after 1 hour
    task_ignore_result = False

    # Task execution settings
    task_soft_time_limit = 600
    task_time_limit = 900

    # Monitoring
    worker_send_task_events = True
    task_send_sent_event = True


def create_celery_app(app_name=__name__):
    """Create and configure Celery app"""
    celery = Celery(app_name)
    celery.config_from_object(CeleryConfig)
    return celery


# Create the Celery instance
celery_app = create_celery_app('tablefetch')
