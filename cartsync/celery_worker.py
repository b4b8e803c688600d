# cartsync/celery_worker.py
from celery import Celery

from cartsync.utils.settings import CELERY_BROKER_URL, CELERY_RESULT_BACKEND, SWEEP_INTERVAL_SECONDS

celery_app = Celery(
    "cartsync",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# taski rejestrowane jawnie
celery_app.conf.imports = ("cartsync.tasks.expire",)

celery_app.conf.beat_schedule = {
    "sweep-carts-hourly": {
        "task": "cartsync.tasks.expire.expire_carts_task",
        "schedule": SWEEP_INTERVAL_SECONDS,  # domyslnie co godzine
    },
}

celery_app.conf.timezone = "UTC"
