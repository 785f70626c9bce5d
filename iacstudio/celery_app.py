"""
Celery application for the provisioning worker pool.

Start a worker with:
    celery -A iacstudio.celery_app worker -Q provisioning

Jobs are acknowledged only after they finish and are requeued when a
worker dies mid-job, so delivery is at-least-once.
"""

from celery import Celery
from celery.signals import setup_logging, worker_process_init

from iacstudio.settings import get_settings

settings = get_settings()

app = Celery(
    'iacstudio',
    broker=settings.queue.celery_broker_url,
    backend=settings.queue.celery_result_backend,
    include=['iacstudio.tasks'],
)

app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Delivery: ack after completion, requeue on worker loss
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=settings.terraform.task_time_limit,

    # Result settings
    result_expires=3600,  # 1 hour

    # Worker settings: fixed-size pool, one job reserved per process
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.queue.worker_concurrency,

    task_routes={
        'deployment.provision': {'queue': 'provisioning'},
        'deployment.destroy': {'queue': 'provisioning'},
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    """Use the engine's logging setup instead of Celery's default."""
    from iacstudio.logging_config import configure_logging
    configure_logging(get_settings())


@worker_process_init.connect
def _init_worker_process(**kwargs):
    """Give each forked worker process its own connections and make sure tables exist."""
    from iacstudio.db import DatabaseManager, init_schema
    from iacstudio.tasks import reset_task_handler

    DatabaseManager.reset()
    reset_task_handler()

    db = get_settings().database
    init_schema(DatabaseManager.get_instance(db_url=db.database_url, db_path=db.database_path))
