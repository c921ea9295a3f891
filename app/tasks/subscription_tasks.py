"""
Celery tasks driving the periodic subscription sweep.
Both tasks are safe to re-run: every step selects rows by their current state.
"""
import logging

from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=2, soft_time_limit=600, time_limit=660)
def process_subscription_cycle(self):
    """Renew freemium rows, start grace periods, expire, then apply scheduled changes."""
    from app.db.session import SessionLocal
    from app.repositories.subscription_repository import SubscriptionRepository
    from app.services.subscription_service import SubscriptionService

    db = SessionLocal()
    try:
        results = SubscriptionService(SubscriptionRepository(db)).process_subscription_cycle()
        logger.info(f"process_subscription_cycle done: {results}")
        return results
    except Exception as exc:
        logger.exception(f"process_subscription_cycle failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=2, soft_time_limit=300, time_limit=360)
def reset_feature_usage(self):
    from app.db.session import SessionLocal
    from app.repositories.subscription_repository import SubscriptionRepository
    from app.services.subscription_service import SubscriptionService

    db = SessionLocal()
    try:
        count = SubscriptionService(SubscriptionRepository(db)).reset_feature_usage()
        return {"reset": count}
    except Exception as exc:
        logger.exception(f"reset_feature_usage failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        db.close()

