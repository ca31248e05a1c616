import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from beanie.operators import Inc, Set

from journey_engine.clock import utc_now
from journey_engine.config import (
    ENROLLMENT_LOCK_TTL_SECONDS,
    MAX_STEPS_PER_RUN,
    OPENAI_API_KEY,
    SWEEP_BATCH_SIZE,
)
from journey_engine.errors import (
    ConflictError,
    ExecutionError,
    InvalidRequestError,
    JourneyEngineError,
    NotFoundError,
)
from journey_engine.models.contact import Contact
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import JourneyDefinition
from journey_engine.models.journey_step import JourneyStep
from journey_engine.models.step_execution import JourneyStepExecution
from journey_engine.services.conditions import trigger_matches
from journey_engine.services.steps import (
    PARK,
    TERMINATE,
    StepContext,
    StepOutcome,
    StepServices,
    dispatch_step,
)

logger = logging.getLogger(__name__)

TERMINAL_ENROLLMENT_STATUSES = ("completed", "exited", "failed")


async def get_entry_step(journey_id: str) -> Optional[JourneyStep]:
    return await JourneyStep.find(JourneyStep.journey_id == journey_id).sort(+JourneyStep.position).first_or_none()


class JourneyEngine:
    """
    Drives enrollments through their journey's steps.

    Every operation reloads what it needs from the store; the engine keeps no
    state between calls apart from its collaborators.
    """

    def __init__(
        self,
        email_sender=None,
        ai_client=None,
        clock=utc_now,
        max_steps_per_run: int = MAX_STEPS_PER_RUN,
        lock_ttl_seconds: int = ENROLLMENT_LOCK_TTL_SECONDS,
    ):
        self.services = StepServices(email_sender=email_sender, ai_client=ai_client)
        self.clock = clock
        self.max_steps_per_run = max_steps_per_run
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.run_id = str(uuid.uuid4())[:8]

    def _log_flow(self, enrollment_id: str, message: str, level: str = "info", **kwargs):
        """Structured logging for enrollment execution"""
        log_data = {
            "run_id": self.run_id,
            "enrollment_id": enrollment_id,
            "message": message,
            **kwargs
        }
        getattr(logger, level)(f"[ENGINE] {log_data}")

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    async def _get_enrollment(self, enrollment_id: str) -> JourneyEnrollment:
        enrollment = await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment_id)
        if not enrollment:
            raise NotFoundError("Enrollment not found")
        return enrollment

    async def _update_enrollment(self, enrollment_id: str, set_fields: Optional[dict] = None, inc_fields: Optional[dict] = None):
        operators = []
        if set_fields:
            operators.append(Set(set_fields))
        if inc_fields:
            operators.append(Inc(inc_fields))
        if operators:
            await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment_id).update(*operators)

    async def _update_execution(self, execution_id: str, set_fields: dict, inc_fields: Optional[dict] = None):
        operators = [Set(set_fields)]
        if inc_fields:
            operators.append(Inc(inc_fields))
        await JourneyStepExecution.find_one(JourneyStepExecution.execution_id == execution_id).update(*operators)

    async def _increment_step(self, step_id: str, succeeded: bool):
        counter = JourneyStep.successful_executions if succeeded else JourneyStep.failed_executions
        await JourneyStep.find_one(JourneyStep.step_id == step_id).update(
            Inc({JourneyStep.total_executions: 1, counter: 1})
        )

    async def _create_pending_execution(self, enrollment_id: str, step_id: str) -> JourneyStepExecution:
        execution = JourneyStepExecution(
            enrollment_id=enrollment_id,
            step_id=step_id,
            status="pending",
            created_at=self.clock(),
        )
        await execution.insert()
        return execution

    async def _find_or_create_execution(self, enrollment_id: str, step_id: str) -> JourneyStepExecution:
        # A failed attempt is retried on the same row so retry_count accumulates.
        execution = await JourneyStepExecution.find(
            JourneyStepExecution.enrollment_id == enrollment_id,
            JourneyStepExecution.step_id == step_id,
            {"status": {"$in": ["pending", "failed"]}},
        ).sort(-JourneyStepExecution.created_at).first_or_none()
        if execution:
            return execution
        return await self._create_pending_execution(enrollment_id, step_id)

    async def _complete_enrollment(self, enrollment: JourneyEnrollment):
        now = self.clock()
        result = await JourneyEnrollment.get_motor_collection().update_one(
            {"enrollment_id": enrollment.enrollment_id, "status": "active"},
            {"$set": {"status": "completed", "completed_at": now, "current_step_id": None}},
        )
        if result.modified_count:
            await JourneyDefinition.find_one(JourneyDefinition.journey_id == enrollment.journey_id).update(
                Inc({JourneyDefinition.total_completed: 1})
            )
            self._log_flow(enrollment.enrollment_id, "Enrollment completed", journey_id=enrollment.journey_id)

    @asynccontextmanager
    async def _enrollment_lease(self, enrollment_id: str):
        """Hold an exclusive, expiring claim on an enrollment for one invocation."""
        token = uuid.uuid4().hex
        now = self.clock()
        collection = JourneyEnrollment.get_motor_collection()
        claimed = await collection.update_one(
            {
                "enrollment_id": enrollment_id,
                "$or": [{"locked_until": None}, {"locked_until": {"$lte": now}}],
            },
            {"$set": {"locked_until": now + self.lock_ttl, "lock_token": token}},
        )
        if claimed.matched_count == 0:
            await self._get_enrollment(enrollment_id)
            raise ConflictError(f"Enrollment {enrollment_id} is being processed by another invocation")
        try:
            yield token
        finally:
            await collection.update_one(
                {"enrollment_id": enrollment_id, "lock_token": token},
                {"$set": {"locked_until": None, "lock_token": None}},
            )

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll_contact(self, journey_id: str, contact_id: str, context: Optional[Dict[str, Any]] = None, source: str = "api") -> JourneyEnrollment:
        if not journey_id or not contact_id:
            raise InvalidRequestError("Journey ID and Contact ID are required")

        journey = await JourneyDefinition.find_one(
            JourneyDefinition.journey_id == journey_id,
            JourneyDefinition.status == "active",
        )
        if not journey:
            raise NotFoundError("Journey not found or not active")

        contact = await Contact.find_one(Contact.contact_id == contact_id)
        if not contact or contact.company_id != journey.company_id:
            raise NotFoundError("Contact not found")

        if not journey.allow_re_enrollment:
            existing = await JourneyEnrollment.find_one(
                JourneyEnrollment.journey_id == journey_id,
                JourneyEnrollment.contact_id == contact_id,
                JourneyEnrollment.status == "active",
            )
            if existing:
                raise ConflictError("Contact is already enrolled in this journey")

        entry_step = await get_entry_step(journey_id)
        if not entry_step:
            raise NotFoundError("Journey has no steps")

        now = self.clock()
        enrollment = JourneyEnrollment(
            journey_id=journey_id,
            contact_id=contact_id,
            company_id=journey.company_id,
            current_step_id=entry_step.step_id,
            enrollment_source=source,
            context=dict(context or {}),
            status="active",
            started_at=now,
            created_at=now,
        )
        await enrollment.insert()
        await self._create_pending_execution(enrollment.enrollment_id, entry_step.step_id)
        await JourneyDefinition.find_one(JourneyDefinition.journey_id == journey_id).update(
            Inc({JourneyDefinition.total_enrolled: 1})
        )
        self._log_flow(
            enrollment.enrollment_id,
            "Contact enrolled",
            journey_id=journey_id,
            contact_id=contact_id,
            entry_step=entry_step.step_id,
            source=source,
        )

        try:
            await self.process_step(enrollment.enrollment_id)
        except JourneyEngineError as e:
            e.enrollment_id = enrollment.enrollment_id
            raise
        return await self._get_enrollment(enrollment.enrollment_id)

    # ------------------------------------------------------------------
    # Step processing
    # ------------------------------------------------------------------

    async def process_step(self, enrollment_id: str) -> Dict[str, Any]:
        if not enrollment_id:
            raise InvalidRequestError("Enrollment ID is required")
        async with self._enrollment_lease(enrollment_id):
            return await self._run(enrollment_id)

    async def _run(self, enrollment_id: str) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for _ in range(self.max_steps_per_run):
            enrollment = await self._get_enrollment(enrollment_id)

            if enrollment.status != "active":
                return {"message": "Enrollment is not active", "status": enrollment.status}

            if not enrollment.current_step_id:
                await self._complete_enrollment(enrollment)
                return {"message": "Journey completed", "status": "completed"}

            step = await JourneyStep.find_one(JourneyStep.step_id == enrollment.current_step_id)
            if not step or step.journey_id != enrollment.journey_id:
                raise NotFoundError(f"Step {enrollment.current_step_id} not found in journey {enrollment.journey_id}")

            parked = await JourneyStepExecution.find_one(
                JourneyStepExecution.enrollment_id == enrollment_id,
                JourneyStepExecution.step_id == step.step_id,
                JourneyStepExecution.status == "scheduled",
            )
            if parked:
                return {
                    "message": "Step is waiting for its scheduled time",
                    "status": "scheduled",
                    "scheduled_for": parked.scheduled_for.isoformat() if parked.scheduled_for else None,
                }

            outcome = await self._execute_step(enrollment, step)
            result = outcome.result

            if outcome.flow in (PARK, TERMINATE):
                return result
            if not outcome.next_step_id:
                await self._complete_enrollment(enrollment)
                return result

        self._log_flow(enrollment_id, f"Step budget of {self.max_steps_per_run} exhausted, next step left pending for the sweep", level="warning")
        return result

    async def _execute_step(self, enrollment: JourneyEnrollment, step: JourneyStep) -> StepOutcome:
        now = self.clock()
        execution = await self._find_or_create_execution(enrollment.enrollment_id, step.step_id)
        await self._update_execution(execution.execution_id, {
            JourneyStepExecution.status: "executing",
            JourneyStepExecution.started_at: now,
        })

        contact = await Contact.find_one(Contact.contact_id == enrollment.contact_id)
        ctx = StepContext.build(enrollment, step, execution.execution_id, contact.as_record() if contact else None, now)
        self._log_flow(enrollment.enrollment_id, f"Executing {step.step_type} step", step_id=step.step_id, execution_id=execution.execution_id)

        try:
            outcome = await dispatch_step(ctx, self.services)
        except Exception as e:
            await self._record_failure(enrollment, step, execution, e)
            if isinstance(e, JourneyEngineError):
                raise
            raise ExecutionError(
                f"Step {step.step_id} ({step.step_type}) failed: {e}",
                step_id=step.step_id,
                execution_id=execution.execution_id,
            ) from e

        await self._record_outcome(enrollment, step, execution, outcome)
        return outcome

    async def _record_failure(self, enrollment: JourneyEnrollment, step: JourneyStep, execution: JourneyStepExecution, error: Exception):
        self._log_flow(
            enrollment.enrollment_id,
            f"Step execution failed: {error}",
            level="error",
            step_id=step.step_id,
            execution_id=execution.execution_id,
        )
        await self._update_execution(
            execution.execution_id,
            {JourneyStepExecution.status: "failed", JourneyStepExecution.error_message: str(error)},
            {JourneyStepExecution.retry_count: 1},
        )
        await self._increment_step(step.step_id, succeeded=False)

    async def _record_outcome(self, enrollment: JourneyEnrollment, step: JourneyStep, execution: JourneyStepExecution, outcome: StepOutcome):
        now = self.clock()

        if outcome.flow == PARK:
            await self._update_execution(execution.execution_id, {
                JourneyStepExecution.status: "scheduled",
                JourneyStepExecution.scheduled_for: outcome.scheduled_for,
                JourneyStepExecution.result: outcome.result,
            })
            self._log_flow(enrollment.enrollment_id, "Step parked", step_id=step.step_id, scheduled_for=outcome.scheduled_for.isoformat())
            return

        execution_fields = {
            JourneyStepExecution.status: "executed",
            JourneyStepExecution.executed_at: now,
            JourneyStepExecution.result: outcome.result,
            JourneyStepExecution.error_message: None,
        }
        if outcome.decision is not None:
            execution_fields[JourneyStepExecution.decision_made] = outcome.decision
        if outcome.email_message_id:
            execution_fields[JourneyStepExecution.email_message_id] = outcome.email_message_id
            execution_fields[JourneyStepExecution.email_status] = "sent"
        await self._update_execution(execution.execution_id, execution_fields)
        await self._increment_step(step.step_id, succeeded=True)

        next_step_id = None if outcome.flow == TERMINATE else outcome.next_step_id
        set_fields = {"current_step_id": next_step_id}
        for key, value in outcome.context_updates.items():
            set_fields[f"context.{key}"] = value
        inc_fields = {}
        if outcome.flow != TERMINATE:
            inc_fields["steps_completed"] = 1
        if outcome.emails_sent:
            inc_fields["emails_sent"] = outcome.emails_sent
        await self._update_enrollment(enrollment.enrollment_id, set_fields, inc_fields)

        if outcome.flow == TERMINATE:
            await self._complete_enrollment(enrollment)
        elif next_step_id:
            await self._create_pending_execution(enrollment.enrollment_id, next_step_id)

        self._log_flow(enrollment.enrollment_id, "Step executed", step_id=step.step_id, next_step_id=next_step_id)

    # ------------------------------------------------------------------
    # Scheduled sweep
    # ------------------------------------------------------------------

    async def process_scheduled_executions(self, limit: int = SWEEP_BATCH_SIZE) -> Dict[str, Any]:
        now = self.clock()
        due = await JourneyStepExecution.find(
            JourneyStepExecution.status == "scheduled",
            JourneyStepExecution.scheduled_for <= now,
        ).sort(+JourneyStepExecution.scheduled_for).limit(limit).to_list()

        logger.info(f"[SWEEP] {len(due)} scheduled executions due at {now.isoformat()}")

        results: List[Dict[str, Any]] = []
        for execution in due:
            try:
                status = await self._resume_scheduled(execution)
                results.append({
                    "execution_id": execution.execution_id,
                    "enrollment_id": execution.enrollment_id,
                    "status": status,
                })
            except Exception as e:
                logger.error(f"[SWEEP] Failed to resume execution {execution.execution_id}: {e}", exc_info=True)
                results.append({
                    "execution_id": execution.execution_id,
                    "enrollment_id": execution.enrollment_id,
                    "status": "error",
                    "error": str(e),
                })

        # Runs cut short by the step budget (or a dead worker) leave a pending row behind.
        stale = await JourneyStepExecution.find(
            JourneyStepExecution.status == "pending",
            JourneyStepExecution.created_at <= now - self.lock_ttl,
        ).sort(+JourneyStepExecution.created_at).limit(limit).to_list()

        for execution in stale:
            try:
                status = await self._continue_pending(execution)
            except ConflictError:
                logger.info(f"[SWEEP] Enrollment {execution.enrollment_id} is busy, leaving pending step {execution.step_id}")
                continue
            except Exception as e:
                logger.error(f"[SWEEP] Failed to continue enrollment {execution.enrollment_id}: {e}", exc_info=True)
                results.append({
                    "execution_id": execution.execution_id,
                    "enrollment_id": execution.enrollment_id,
                    "status": "error",
                    "error": str(e),
                })
                continue
            if status:
                results.append({
                    "execution_id": execution.execution_id,
                    "enrollment_id": execution.enrollment_id,
                    "status": status,
                })

        return {"processed": len(results), "results": results}

    async def _continue_pending(self, execution: JourneyStepExecution) -> Optional[str]:
        enrollment = await self._get_enrollment(execution.enrollment_id)
        if enrollment.status != "active" or enrollment.current_step_id != execution.step_id:
            return None
        self._log_flow(enrollment.enrollment_id, "Continuing stalled enrollment", step_id=execution.step_id)
        await self.process_step(enrollment.enrollment_id)
        return "continued"

    async def _resume_scheduled(self, execution: JourneyStepExecution) -> str:
        async with self._enrollment_lease(execution.enrollment_id):
            claimed = await JourneyStepExecution.get_motor_collection().update_one(
                {"execution_id": execution.execution_id, "status": "scheduled"},
                {"$set": {"status": "executing"}},
            )
            if claimed.modified_count == 0:
                return "skipped"

            now = self.clock()
            enrollment = await self._get_enrollment(execution.enrollment_id)
            if enrollment.status in TERMINAL_ENROLLMENT_STATUSES:
                await self._update_execution(execution.execution_id, {
                    JourneyStepExecution.status: "skipped",
                    JourneyStepExecution.executed_at: now,
                })
                return "skipped"

            step = await JourneyStep.find_one(JourneyStep.step_id == execution.step_id)
            await self._update_execution(execution.execution_id, {
                JourneyStepExecution.status: "executed",
                JourneyStepExecution.executed_at: now,
            })
            if step:
                await self._increment_step(step.step_id, succeeded=True)

            next_step_id = step.next_step_id if step else None
            await self._update_enrollment(
                enrollment.enrollment_id,
                {"current_step_id": next_step_id},
                {"steps_completed": 1},
            )
            if next_step_id:
                await self._create_pending_execution(enrollment.enrollment_id, next_step_id)

            if enrollment.status != "active":
                self._log_flow(enrollment.enrollment_id, f"Delay elapsed while {enrollment.status}, advanced without running", next_step_id=next_step_id)
                return "advanced"

            if next_step_id:
                await self._run(enrollment.enrollment_id)
            else:
                await self._complete_enrollment(enrollment)
            return "processed"

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def check_triggers(self, trigger_type: str, trigger_data: Dict[str, Any]) -> Dict[str, Any]:
        if not trigger_type or not trigger_data:
            raise InvalidRequestError("Trigger type and data are required")

        company_id = trigger_data.get("company_id")
        contact_id = trigger_data.get("contact_id")
        if not company_id or not contact_id:
            raise InvalidRequestError("Company ID and Contact ID are required")

        journeys = await JourneyDefinition.find(
            JourneyDefinition.company_id == company_id,
            JourneyDefinition.status == "active",
            JourneyDefinition.trigger_type == trigger_type,
        ).to_list()
        logger.info(f"[TRIGGER] {trigger_type} for contact {contact_id}: {len(journeys)} candidate journeys")

        enrolled = []
        for journey in journeys:
            if not trigger_matches(trigger_type, journey.trigger_conditions, trigger_data):
                logger.debug(f"[TRIGGER] Journey {journey.journey_id} conditions not met")
                continue
            try:
                enrollment = await self.enroll_contact(
                    journey.journey_id,
                    contact_id,
                    context=dict(trigger_data),
                    source="trigger",
                )
                enrolled.append({"journey_id": journey.journey_id, "enrollment_id": enrollment.enrollment_id})
            except Exception as e:
                enrollment_id = getattr(e, "enrollment_id", None)
                if enrollment_id:
                    # Enrolled, but the first steps failed; the enrollment stays active at the failed step.
                    logger.error(f"[TRIGGER] Enrollment {enrollment_id} in journey {journey.journey_id} failed after enrolling: {e}")
                    enrolled.append({"journey_id": journey.journey_id, "enrollment_id": enrollment_id, "error": str(e)})
                    continue
                logger.error(f"[TRIGGER] Failed to enroll contact {contact_id} in journey {journey.journey_id}: {e}", exc_info=True)

        return {"triggered": trigger_type, "enrolled": enrolled}


def build_engine() -> JourneyEngine:
    """Engine wired to the production email and AI collaborators."""
    from journey_engine.services.ai import OpenAICompletionClient
    from journey_engine.services.email import SmtpEmailSender

    ai_client = OpenAICompletionClient() if OPENAI_API_KEY else None
    if ai_client is None:
        logger.warning("[ENGINE] OPENAI_API_KEY not set, ai_decision steps will use their first option")
    return JourneyEngine(email_sender=SmtpEmailSender(), ai_client=ai_client)
