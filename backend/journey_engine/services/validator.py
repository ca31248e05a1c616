"""
Structural checks run before a journey may be activated.

Problems are reported as data so the builder UI can show every issue at once;
nothing in here raises for an invalid journey.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from journey_engine.models.journey import JourneyDefinition
from journey_engine.models.journey_step import BRANCHING_STEP_TYPES, JourneyStep

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def error(self, message: str):
        self.errors.append(message)
        self.valid = False

    def warning(self, message: str):
        self.warnings.append(message)

    def as_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


def find_entry_step(steps: List[JourneyStep]) -> Optional[JourneyStep]:
    if not steps:
        return None
    return min(steps, key=lambda s: s.position)


def _check_step(step: JourneyStep, step_ids: set, result: ValidationResult):
    label = f"Step '{step.name}' ({step.step_id})"

    for target in step.outgoing_step_ids():
        if target not in step_ids:
            result.error(f"{label} points to unknown step {target}")

    config = step.config
    if step.step_type == "condition":
        if not step.condition_true_step_id or not step.condition_false_step_id:
            result.error(f"{label} needs both a true and a false branch")
        if not config.conditions:
            result.warning(f"{label} has no conditions and always takes the true branch")
    elif step.step_type == "ai_decision":
        if not config.options:
            result.error(f"{label} has no decision options")
        for key, target in config.options.items():
            if not target:
                result.error(f"{label} option '{key}' has no target step")

    if step.step_type not in BRANCHING_STEP_TYPES and (step.condition_true_step_id or step.condition_false_step_id):
        result.error(f"{label} is not a branching step but has condition branches")

    if step.step_type == "send_email":
        if not (config.subject or "").strip():
            result.error(f"{label} has no email subject")
        if not (config.body or "").strip():
            result.error(f"{label} has no email body")
    elif step.step_type == "delay" and config.amount <= 0:
        result.error(f"{label} must wait a positive amount of time")

    if step.step_type == "exit":
        if step.outgoing_step_ids():
            result.warning(f"{label} is an exit step; its outgoing connections are never followed")
    elif not step.outgoing_step_ids():
        result.warning(f"{label} has no outgoing connection; the journey completes there")


def _reachable(entry: JourneyStep, by_id: Dict[str, JourneyStep]) -> set:
    seen = {entry.step_id}
    stack = [entry]
    while stack:
        step = stack.pop()
        for target in step.outgoing_step_ids():
            if target in by_id and target not in seen:
                seen.add(target)
                stack.append(by_id[target])
    return seen


def _find_tight_cycle(by_id: Dict[str, JourneyStep]) -> Optional[List[str]]:
    """A cycle made only of non-delay steps, which would run without ever parking."""
    graph = {
        step_id: [t for t in step.outgoing_step_ids() if t in by_id and by_id[t].step_type != "delay"]
        for step_id, step in by_id.items()
        if step.step_type != "delay"
    }
    WHITE, GREY, BLACK = 0, 1, 2
    color = {step_id: WHITE for step_id in graph}

    for root in graph:
        if color[root] != WHITE:
            continue
        path = [root]
        color[root] = GREY
        iterators = [iter(graph[root])]
        while iterators:
            advanced = False
            for target in iterators[-1]:
                if color[target] == GREY:
                    return path[path.index(target):] + [target]
                if color[target] == WHITE:
                    color[target] = GREY
                    path.append(target)
                    iterators.append(iter(graph[target]))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = BLACK
                iterators.pop()
    return None


def validate_journey(journey: JourneyDefinition, steps: List[JourneyStep]) -> ValidationResult:
    result = ValidationResult()

    if not steps:
        result.error("Journey has no steps")
        return result

    by_id = {step.step_id: step for step in steps}
    entry = find_entry_step(steps)
    tied = [s.step_id for s in steps if s.position == entry.position]
    if len(tied) > 1:
        result.error(f"Entry step is ambiguous: steps {', '.join(tied)} share position {entry.position}")

    for step in sorted(steps, key=lambda s: s.position):
        _check_step(step, set(by_id), result)

    reachable = _reachable(entry, by_id)
    for step in steps:
        if step.step_id not in reachable:
            result.error(f"Step '{step.name}' ({step.step_id}) is unreachable from the entry step")

    cycle = _find_tight_cycle(by_id)
    if cycle:
        result.error(f"Steps {' -> '.join(cycle)} form a loop without a delay step")

    logger.info(f"[VALIDATE] Journey {journey.journey_id}: {len(result.errors)} errors, {len(result.warnings)} warnings")
    return result
