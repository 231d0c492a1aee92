from celery import Celery

from portal_billing.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "portal_billing",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["portal_billing.billing.tasks"],
)
celery_app.conf.timezone = "UTC"
