"""
Step handlers for the journey engine.

Each handler receives an immutable ``StepContext`` built by the engine for a
single step and returns a ``StepOutcome`` describing what happened and where
the enrollment goes next. Handlers never touch the enrollment or execution
rows; the engine persists the outcome.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from beanie.operators import Set

from journey_engine.config import AI_DECISION_TEMPERATURE
from journey_engine.models.activity import Activity
from journey_engine.models.contact import Contact, IDENTITY_FIELDS
from journey_engine.models.journey_step import JourneyStep
from journey_engine.services.ai import build_decision_messages
from journey_engine.services.conditions import evaluate_conditions
from journey_engine.services.templating import render_template

logger = logging.getLogger(__name__)

DELAY_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}

# How the engine continues after a step.
ADVANCE = "advance"
PARK = "park"
TERMINATE = "terminate"


@dataclass(frozen=True)
class StepContext:
    enrollment_id: str
    journey_id: str
    company_id: str
    contact_id: str
    execution_id: str
    step: JourneyStep
    contact: Mapping[str, Any]
    context: Mapping[str, Any]
    now: datetime

    @classmethod
    def build(cls, enrollment, step: JourneyStep, execution_id: str, contact: Optional[dict], now: datetime) -> "StepContext":
        return cls(
            enrollment_id=enrollment.enrollment_id,
            journey_id=enrollment.journey_id,
            company_id=enrollment.company_id,
            contact_id=enrollment.contact_id,
            execution_id=execution_id,
            step=step,
            contact=MappingProxyType(dict(contact or {})),
            context=MappingProxyType(dict(enrollment.context or {})),
            now=now,
        )

    def render(self, text: Optional[str]) -> str:
        return render_template(text, self.contact, self.context)


@dataclass
class StepOutcome:
    result: Dict[str, Any]
    next_step_id: Optional[str] = None
    flow: str = ADVANCE
    scheduled_for: Optional[datetime] = None
    emails_sent: int = 0
    email_message_id: Optional[str] = None
    decision: Optional[str] = None
    context_updates: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepServices:
    email_sender: Any = None
    ai_client: Any = None


async def _load_contact(contact_id: str) -> Contact:
    contact = await Contact.find_one(Contact.contact_id == contact_id)
    if not contact:
        raise LookupError(f"Contact {contact_id} not found")
    return contact


async def execute_send_email(ctx: StepContext, services: StepServices) -> StepOutcome:
    step = ctx.step
    email = ctx.contact.get("email")
    if not email:
        logger.warning(f"[STEP] Contact {ctx.contact_id} has no email, skipping send for step {step.step_id}")
        return StepOutcome(result={"success": False, "message": "Contact has no email"}, next_step_id=step.next_step_id)

    if services.email_sender is None:
        raise RuntimeError("No email sender configured")

    subject = ctx.render(step.config.subject)
    content = ctx.render(step.config.body)
    recipient_name = f"{ctx.contact.get('first_name') or ''} {ctx.contact.get('last_name') or ''}".strip()

    message_id = await services.email_sender.send(
        to=email,
        subject=subject,
        html_content=content,
        recipient_name=recipient_name,
        tracking_id=ctx.execution_id,
    )
    logger.info(f"[STEP] Email '{subject}' sent to {email} for enrollment {ctx.enrollment_id}")
    return StepOutcome(
        result={"success": True, "messageId": message_id},
        next_step_id=step.next_step_id,
        emails_sent=1,
        email_message_id=message_id,
    )


async def execute_delay(ctx: StepContext, services: StepServices) -> StepOutcome:
    config = ctx.step.config
    unit = DELAY_UNITS.get(config.unit)
    if unit is None:
        raise ValueError(f"Unsupported delay unit: {config.unit}")
    if config.amount <= 0:
        raise ValueError(f"Delay amount must be positive, got {config.amount}")

    scheduled_for = ctx.now + unit * config.amount
    return StepOutcome(
        result={
            "success": True,
            "message": f"Step scheduled for {scheduled_for.isoformat()}",
            "scheduled_for": scheduled_for.isoformat(),
        },
        next_step_id=ctx.step.next_step_id,
        flow=PARK,
        scheduled_for=scheduled_for,
    )


async def execute_condition(ctx: StepContext, services: StepServices) -> StepOutcome:
    step = ctx.step
    conditions = step.config.conditions
    passed = evaluate_conditions(conditions, ctx.contact)
    return StepOutcome(
        result={"passed": passed, "conditions_evaluated": len(conditions)},
        next_step_id=step.condition_true_step_id if passed else step.condition_false_step_id,
        decision="true" if passed else "false",
    )


async def execute_ai_decision(ctx: StepContext, services: StepServices) -> StepOutcome:
    step = ctx.step
    options = step.config.options
    option_keys = list(options.keys())
    fallback = option_keys[0] if option_keys else None
    prompt = ctx.render(step.config.prompt)

    try:
        if services.ai_client is None:
            raise RuntimeError("No AI completion client configured")
        content = await services.ai_client.complete(
            build_decision_messages(prompt, option_keys),
            temperature=AI_DECISION_TEMPERATURE,
        )
        decision = (content or "").strip()
        result = {"decision": decision, "aiResponse": content}
        if decision not in options:
            result["invalidDecision"] = decision
            decision = fallback
            result["decision"] = decision
    except Exception as e:
        # An AI outage must not stall the journey: take the first option.
        logger.warning(f"[STEP] AI decision failed for step {step.step_id}, falling back to '{fallback}': {e}")
        decision = fallback
        result = {"decision": decision, "error": str(e)}

    next_step_id = options.get(decision) if decision is not None else None
    if not next_step_id:
        next_step_id = step.condition_true_step_id
    result["nextStepId"] = next_step_id

    return StepOutcome(
        result=result,
        next_step_id=next_step_id,
        decision=decision,
        context_updates={"ai_decision": decision},
    )


async def execute_update_contact(ctx: StepContext, services: StepServices) -> StepOutcome:
    updates = {k: v for k, v in ctx.step.config.updates.items() if k not in IDENTITY_FIELDS}
    skipped = sorted(set(ctx.step.config.updates) - set(updates))
    if skipped:
        logger.warning(f"[STEP] Ignoring identity fields in update_contact: {skipped}")

    contact = await _load_contact(ctx.contact_id)
    if updates:
        await Contact.find_one(Contact.contact_id == contact.contact_id).update(Set({**updates, "updated_at": ctx.now}))
    return StepOutcome(
        result={"success": True, "updated_fields": list(updates.keys())},
        next_step_id=ctx.step.next_step_id,
    )


async def execute_add_tag(ctx: StepContext, services: StepServices) -> StepOutcome:
    tags_to_add = ctx.step.config.tags
    contact = await _load_contact(ctx.contact_id)
    new_tags = list(contact.ai_tags or [])
    for tag in tags_to_add:
        if tag not in new_tags:
            new_tags.append(tag)
    await Contact.find_one(Contact.contact_id == contact.contact_id).update(
        Set({Contact.ai_tags: new_tags, Contact.updated_at: ctx.now})
    )
    return StepOutcome(
        result={"success": True, "tags_added": list(tags_to_add)},
        next_step_id=ctx.step.next_step_id,
    )


async def execute_remove_tag(ctx: StepContext, services: StepServices) -> StepOutcome:
    tags_to_remove = set(ctx.step.config.tags)
    contact = await _load_contact(ctx.contact_id)
    new_tags = [tag for tag in (contact.ai_tags or []) if tag not in tags_to_remove]
    await Contact.find_one(Contact.contact_id == contact.contact_id).update(
        Set({Contact.ai_tags: new_tags, Contact.updated_at: ctx.now})
    )
    return StepOutcome(
        result={"success": True, "tags_removed": list(ctx.step.config.tags)},
        next_step_id=ctx.step.next_step_id,
    )


async def execute_create_activity(ctx: StepContext, services: StepServices) -> StepOutcome:
    config = ctx.step.config
    activity = Activity(
        company_id=ctx.company_id,
        contact_id=ctx.contact_id,
        activity_type=config.activity_type or "task",
        subject=ctx.render(config.subject or "Automated task"),
        description=ctx.render(config.description or ""),
        activity_date=ctx.now,
        ai_generated=True,
    )
    await activity.insert()
    return StepOutcome(
        result={"success": True, "activity_id": activity.activity_id},
        next_step_id=ctx.step.next_step_id,
    )


async def execute_exit(ctx: StepContext, services: StepServices) -> StepOutcome:
    return StepOutcome(
        result={"message": "Journey completed via exit step", "reason": ctx.step.config.reason},
        next_step_id=None,
        flow=TERMINATE,
    )


StepHandler = Callable[[StepContext, StepServices], Awaitable[StepOutcome]]

STEP_HANDLERS: Dict[str, StepHandler] = {
    "send_email": execute_send_email,
    "delay": execute_delay,
    "condition": execute_condition,
    "ai_decision": execute_ai_decision,
    "update_contact": execute_update_contact,
    "add_tag": execute_add_tag,
    "remove_tag": execute_remove_tag,
    "create_activity": execute_create_activity,
    "exit": execute_exit,
}


async def dispatch_step(ctx: StepContext, services: StepServices) -> StepOutcome:
    handler = STEP_HANDLERS.get(ctx.step.step_type)
    if handler is None:
        raise ValueError(f"Step type {ctx.step.step_type} not implemented")
    return await handler(ctx, services)
