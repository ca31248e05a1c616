import logging
from typing import Any, Dict, List, Optional, Tuple

from beanie.operators import Set
from pydantic import ValidationError

from journey_engine.clock import utc_now
from journey_engine.errors import ConflictError, InvalidRequestError, NotFoundError
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import JourneyDefinition
from journey_engine.models.journey_step import AIDecisionConfig, JourneyStep
from journey_engine.models.step_execution import JourneyStepExecution
from journey_engine.services.validator import ValidationResult, validate_journey

logger = logging.getLogger(__name__)

JOURNEY_UPDATABLE_FIELDS = (
    "name",
    "description",
    "trigger_type",
    "trigger_conditions",
    "allow_re_enrollment",
    "tags",
    "status",
)
STEP_UPDATABLE_FIELDS = (
    "name",
    "description",
    "position",
    "position_x",
    "position_y",
    "config",
    "next_step_id",
    "condition_true_step_id",
    "condition_false_step_id",
)
EDGE_FIELDS = {
    "next": "next_step_id",
    "condition_true": "condition_true_step_id",
    "condition_false": "condition_false_step_id",
}
OPTION_EDGE_PREFIX = "option:"


# ----------------------------------------------------------------------
# Journeys
# ----------------------------------------------------------------------

async def get_journey(journey_id: str) -> JourneyDefinition:
    journey = await JourneyDefinition.find_one(JourneyDefinition.journey_id == journey_id)
    if not journey:
        raise NotFoundError("Journey not found")
    return journey


async def list_journeys(company_id: str, status: Optional[str] = None) -> List[JourneyDefinition]:
    filters = [JourneyDefinition.company_id == company_id]
    if status:
        filters.append(JourneyDefinition.status == status)
    return await JourneyDefinition.find(*filters).sort(-JourneyDefinition.created_at).to_list()


async def create_journey(data: Dict[str, Any]) -> JourneyDefinition:
    if not data.get("company_id"):
        raise InvalidRequestError("Company ID is required")
    if not data.get("name"):
        raise InvalidRequestError("Journey name is required")
    fields = {k: v for k, v in data.items() if k in JOURNEY_UPDATABLE_FIELDS and k != "status"}
    try:
        journey = JourneyDefinition(company_id=data["company_id"], status="draft", **fields)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid journey: {e}")
    await journey.insert()
    logger.info(f"[BUILDER] Created journey {journey.journey_id} for company {journey.company_id}")
    return journey


async def update_journey(journey_id: str, updates: Dict[str, Any]) -> JourneyDefinition:
    journey = await get_journey(journey_id)
    updates = {k: v for k, v in updates.items() if k in JOURNEY_UPDATABLE_FIELDS}
    if updates.get("status") == "active" and journey.status != "active":
        raise InvalidRequestError("Use the activate operation to activate a journey")
    try:
        merged = JourneyDefinition.model_validate({**journey.model_dump(exclude={"id", "revision_id"}), **updates})
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid journey update: {e}")
    if not updates:
        return journey

    set_fields = {key: getattr(merged, key) for key in updates}
    set_fields["updated_at"] = utc_now()
    await JourneyDefinition.find_one(JourneyDefinition.journey_id == journey_id).update(Set(set_fields))
    logger.info(f"[BUILDER] Updated journey {journey_id}: {sorted(updates)}")
    return await get_journey(journey_id)


async def delete_journey(journey_id: str) -> Dict[str, int]:
    journey = await get_journey(journey_id)
    if journey.status == "active":
        raise ConflictError("Pause the journey before deleting it")

    enrollment_ids = [
        e.enrollment_id
        for e in await JourneyEnrollment.find(JourneyEnrollment.journey_id == journey_id).to_list()
    ]
    executions = await JourneyStepExecution.find({"enrollment_id": {"$in": enrollment_ids}}).delete()
    enrollments = await JourneyEnrollment.find(JourneyEnrollment.journey_id == journey_id).delete()
    steps = await JourneyStep.find(JourneyStep.journey_id == journey_id).delete()
    await journey.delete()

    deleted = {
        "steps": steps.deleted_count if steps else 0,
        "enrollments": enrollments.deleted_count if enrollments else 0,
        "executions": executions.deleted_count if executions else 0,
    }
    logger.info(f"[BUILDER] Deleted journey {journey_id}: {deleted}")
    return deleted


async def pause_journey(journey_id: str) -> JourneyDefinition:
    journey = await get_journey(journey_id)
    if journey.status != "active":
        raise ConflictError(f"Only active journeys can be paused (status is {journey.status})")
    await JourneyDefinition.find_one(JourneyDefinition.journey_id == journey_id).update(
        Set({JourneyDefinition.status: "paused", JourneyDefinition.updated_at: utc_now()})
    )
    logger.info(f"[BUILDER] Paused journey {journey_id}")
    return await get_journey(journey_id)


async def validate(journey_id: str) -> ValidationResult:
    journey = await get_journey(journey_id)
    return validate_journey(journey, await list_steps(journey_id))


async def activate_journey(journey_id: str) -> Tuple[JourneyDefinition, ValidationResult]:
    journey = await get_journey(journey_id)
    if journey.status == "archived":
        raise ConflictError("Archived journeys cannot be activated")

    result = validate_journey(journey, await list_steps(journey_id))
    if not result.valid:
        logger.warning(f"[BUILDER] Refusing to activate journey {journey_id}: {result.errors}")
        return journey, result

    await JourneyDefinition.find_one(JourneyDefinition.journey_id == journey_id).update(
        Set({JourneyDefinition.status: "active", JourneyDefinition.updated_at: utc_now()})
    )
    logger.info(f"[BUILDER] Activated journey {journey_id}")
    return await get_journey(journey_id), result


async def clone_journey(journey_id: str, name: Optional[str] = None) -> JourneyDefinition:
    source = await get_journey(journey_id)
    steps = await list_steps(journey_id)

    clone = JourneyDefinition(
        company_id=source.company_id,
        name=name or f"{source.name} (copy)",
        description=source.description,
        status="draft",
        trigger_type=source.trigger_type,
        trigger_conditions=dict(source.trigger_conditions),
        allow_re_enrollment=source.allow_re_enrollment,
        tags=list(source.tags),
    )
    await clone.insert()

    copies = {
        step.step_id: JourneyStep(
            journey_id=clone.journey_id,
            name=step.name,
            description=step.description,
            position=step.position,
            position_x=step.position_x,
            position_y=step.position_y,
            config=step.config.model_copy(deep=True),
        )
        for step in steps
    }

    def remap(step_id: Optional[str]) -> Optional[str]:
        return copies[step_id].step_id if step_id in copies else None

    for step in steps:
        copy = copies[step.step_id]
        copy.next_step_id = remap(step.next_step_id)
        copy.condition_true_step_id = remap(step.condition_true_step_id)
        copy.condition_false_step_id = remap(step.condition_false_step_id)
        if isinstance(copy.config, AIDecisionConfig):
            copy.config.options = {key: remap(target) for key, target in copy.config.options.items()}
        await copy.insert()

    logger.info(f"[BUILDER] Cloned journey {journey_id} into {clone.journey_id} with {len(steps)} steps")
    return clone


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

def _ensure_editable(journey: JourneyDefinition):
    if journey.status == "active":
        raise ConflictError("Steps of an active journey cannot be changed; pause the journey first")


async def get_step(step_id: str) -> JourneyStep:
    step = await JourneyStep.find_one(JourneyStep.step_id == step_id)
    if not step:
        raise NotFoundError("Step not found")
    return step


async def list_steps(journey_id: str) -> List[JourneyStep]:
    return await JourneyStep.find(JourneyStep.journey_id == journey_id).sort(+JourneyStep.position).to_list()


async def _ensure_targets_in_journey(journey_id: str, targets: List[Optional[str]]):
    for target in targets:
        if not target:
            continue
        step = await JourneyStep.find_one(JourneyStep.step_id == target)
        if not step or step.journey_id != journey_id:
            raise InvalidRequestError(f"Target step {target} is not part of journey {journey_id}")


async def create_step(journey_id: str, data: Dict[str, Any]) -> JourneyStep:
    journey = await get_journey(journey_id)
    _ensure_editable(journey)

    fields = {k: v for k, v in data.items() if k in STEP_UPDATABLE_FIELDS}
    if fields.get("position") is None:
        last = await JourneyStep.find(JourneyStep.journey_id == journey_id).sort(-JourneyStep.position).first_or_none()
        fields["position"] = last.position + 1 if last else 0
    try:
        step = JourneyStep.model_validate({"journey_id": journey_id, **fields})
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid step: {e}")

    await _ensure_targets_in_journey(journey_id, step.outgoing_step_ids())
    await step.insert()
    logger.info(f"[BUILDER] Created {step.step_type} step {step.step_id} in journey {journey_id}")
    return step


async def update_step(step_id: str, updates: Dict[str, Any]) -> JourneyStep:
    step = await get_step(step_id)
    _ensure_editable(await get_journey(step.journey_id))

    updates = {k: v for k, v in updates.items() if k in STEP_UPDATABLE_FIELDS}
    if not updates:
        return step
    try:
        merged = JourneyStep.model_validate({**step.model_dump(exclude={"id", "revision_id"}), **updates})
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid step update: {e}")
    await _ensure_targets_in_journey(step.journey_id, merged.outgoing_step_ids())

    set_fields = {}
    for key in updates:
        value = getattr(merged, key)
        set_fields[key] = value.model_dump() if key == "config" else value
    set_fields["updated_at"] = utc_now()
    await JourneyStep.find_one(JourneyStep.step_id == step_id).update(Set(set_fields))
    logger.info(f"[BUILDER] Updated step {step_id}: {sorted(updates)}")
    return await get_step(step_id)


async def delete_step(step_id: str) -> int:
    """Delete a step and clear every edge pointing at it. Returns the number of steps touched."""
    step = await get_step(step_id)
    _ensure_editable(await get_journey(step.journey_id))

    waiting = await JourneyEnrollment.find(
        JourneyEnrollment.current_step_id == step_id,
        {"status": {"$in": ["active", "paused"]}},
    ).count()
    if waiting:
        raise ConflictError(f"Step {step_id} is the current step of {waiting} enrollments; exit them or wait for them to move on")

    touched = 0
    for other in await list_steps(step.journey_id):
        if other.step_id == step_id:
            continue
        set_fields = {}
        for field_name in EDGE_FIELDS.values():
            if getattr(other, field_name) == step_id:
                set_fields[field_name] = None
        if isinstance(other.config, AIDecisionConfig) and step_id in other.config.options.values():
            options = {k: (None if v == step_id else v) for k, v in other.config.options.items()}
            set_fields["config"] = other.config.model_copy(update={"options": options}).model_dump()
        if set_fields:
            set_fields["updated_at"] = utc_now()
            await JourneyStep.find_one(JourneyStep.step_id == other.step_id).update(Set(set_fields))
            touched += 1

    await step.delete()
    logger.info(f"[BUILDER] Deleted step {step_id}, cleared edges on {touched} steps")
    return touched


async def _set_edge(step_id: str, edge: str, target: Optional[str]) -> JourneyStep:
    step = await get_step(step_id)
    _ensure_editable(await get_journey(step.journey_id))
    await _ensure_targets_in_journey(step.journey_id, [target])

    if edge in EDGE_FIELDS:
        set_fields = {EDGE_FIELDS[edge]: target}
    elif edge.startswith(OPTION_EDGE_PREFIX):
        key = edge[len(OPTION_EDGE_PREFIX):]
        if not isinstance(step.config, AIDecisionConfig):
            raise InvalidRequestError("Option connections are only valid on ai_decision steps")
        if not key:
            raise InvalidRequestError("Option key is required")
        options = dict(step.config.options)
        if target is None and key not in options:
            raise InvalidRequestError(f"Unknown option '{key}'")
        options[key] = target
        set_fields = {"config": step.config.model_copy(update={"options": options}).model_dump()}
    else:
        raise InvalidRequestError(f"Unknown connection type: {edge}")

    set_fields["updated_at"] = utc_now()
    await JourneyStep.find_one(JourneyStep.step_id == step_id).update(Set(set_fields))
    return await get_step(step_id)


async def connect_steps(source_step_id: str, target_step_id: str, edge: str = "next") -> JourneyStep:
    if not target_step_id:
        raise InvalidRequestError("Target step ID is required")
    step = await _set_edge(source_step_id, edge, target_step_id)
    logger.info(f"[BUILDER] Connected {source_step_id} -[{edge}]-> {target_step_id}")
    return step


async def disconnect_steps(source_step_id: str, edge: str = "next") -> JourneyStep:
    step = await _set_edge(source_step_id, edge, None)
    logger.info(f"[BUILDER] Disconnected {edge} edge of {source_step_id}")
    return step


async def update_positions(journey_id: str, positions: List[Dict[str, Any]]) -> List[JourneyStep]:
    """Bulk canvas layout update; only coordinates (and optionally order) change."""
    journey = await get_journey(journey_id)
    steps = {s.step_id: s for s in await list_steps(journey_id)}

    for item in positions:
        step_id = item.get("step_id")
        if step_id not in steps:
            raise InvalidRequestError(f"Step {step_id} is not part of journey {journey_id}")
        set_fields = {}
        for key in ("position_x", "position_y"):
            if item.get(key) is not None:
                set_fields[key] = float(item[key])
        if item.get("position") is not None:
            _ensure_editable(journey)
            set_fields["position"] = int(item["position"])
        if set_fields:
            await JourneyStep.find_one(JourneyStep.step_id == step_id).update(Set(set_fields))

    return await list_steps(journey_id)
