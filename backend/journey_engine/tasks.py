import asyncio
import logging

from journey_engine.celery_config import celery_app
from journey_engine.db.init import init_db
from journey_engine.errors import ConflictError

logger = logging.getLogger(__name__)


def _run(operation):
    """Run one engine coroutine on a fresh loop with Beanie initialised."""
    from journey_engine.services.engine import build_engine

    async def runner():
        await init_db()
        return await operation(build_engine())

    return asyncio.run(runner())


@celery_app.task(name="journey_engine.tasks.process_scheduled_task", acks_late=True, max_retries=3)
def process_scheduled_task(limit: int = None):
    """Resume every delay step whose time has come."""
    async def sweep(engine):
        if limit:
            return await engine.process_scheduled_executions(limit=limit)
        return await engine.process_scheduled_executions()

    try:
        result = _run(sweep)
        logger.info(f"[SWEEP] Processed {result['processed']} scheduled executions")
        return result
    except Exception as e:
        logger.error(f"[SWEEP] process_scheduled_task failed: {e}", exc_info=True)
        raise


@celery_app.task(name="journey_engine.tasks.process_step_task", bind=True, acks_late=True, max_retries=3)
def process_step_task(self, enrollment_id: str):
    """Drive one enrollment forward outside the request cycle."""
    try:
        return _run(lambda engine: engine.process_step(enrollment_id))
    except ConflictError as e:
        # Another invocation holds the enrollment; try again once its lease is released.
        logger.warning(f"[ENGINE] Enrollment {enrollment_id} busy, retrying: {e.message}")
        raise self.retry(exc=e, countdown=30)
    except Exception as e:
        logger.error(f"[ENGINE] process_step_task failed for {enrollment_id}: {e}", exc_info=True)
        raise


@celery_app.task(name="journey_engine.tasks.check_triggers_task", acks_late=True, max_retries=3)
def check_triggers_task(trigger_type: str, trigger_data: dict):
    """Enroll a contact into every active journey whose trigger matches a CRM event."""
    try:
        result = _run(lambda engine: engine.check_triggers(trigger_type, trigger_data))
        logger.info(f"[TRIGGER] {trigger_type}: {len(result['enrolled'])} enrollments")
        return result
    except Exception as e:
        logger.error(f"[TRIGGER] check_triggers_task failed for {trigger_type}: {e}", exc_info=True)
        raise
