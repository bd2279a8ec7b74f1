from celery import Celery
from core.config import settings

celery = Celery(
    "coop_ledger",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["reconciliation.tasks", "rewards.tasks"],
)

celery.conf.update(
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],
    timezone='UTC',
    enable_utc=True,
    # reward mints serialize on the backend signer
    task_routes={
        'rewards.*': {'queue': 'rewards'},
        'reconciliation.*': {'queue': 'reconciliation'},
    },
    worker_prefetch_multiplier=1,
)
