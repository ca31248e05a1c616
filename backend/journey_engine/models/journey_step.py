import uuid
from beanie import Document, Indexed
from pydantic import BaseModel, Field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime

from journey_engine.clock import utc_now

DelayUnit = Literal["minutes", "hours", "days", "weeks"]

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "greater_than",
    "less_than",
    "is_set",
    "is_not_set",
]


class ConditionPredicate(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None


class SendEmailConfig(BaseModel):
    step_type: Literal["send_email"] = "send_email"
    subject: str = ""
    body: str = ""


class DelayConfig(BaseModel):
    step_type: Literal["delay"] = "delay"
    amount: float = 1
    unit: DelayUnit = "hours"


class ConditionConfig(BaseModel):
    step_type: Literal["condition"] = "condition"
    conditions: List[ConditionPredicate] = Field(default_factory=list)


class AIDecisionConfig(BaseModel):
    step_type: Literal["ai_decision"] = "ai_decision"
    prompt: str = ""
    # decision key -> target step id; declaration order decides the fallback
    options: Dict[str, Optional[str]] = Field(default_factory=dict)


class UpdateContactConfig(BaseModel):
    step_type: Literal["update_contact"] = "update_contact"
    updates: Dict[str, Any] = Field(default_factory=dict)


class AddTagConfig(BaseModel):
    step_type: Literal["add_tag"] = "add_tag"
    tags: List[str] = Field(default_factory=list)


class RemoveTagConfig(BaseModel):
    step_type: Literal["remove_tag"] = "remove_tag"
    tags: List[str] = Field(default_factory=list)


class CreateActivityConfig(BaseModel):
    step_type: Literal["create_activity"] = "create_activity"
    activity_type: str = "task"
    subject: str = "Automated task"
    description: str = ""


class ExitConfig(BaseModel):
    step_type: Literal["exit"] = "exit"
    reason: Optional[str] = None


StepConfig = Annotated[
    Union[
        SendEmailConfig,
        DelayConfig,
        ConditionConfig,
        AIDecisionConfig,
        UpdateContactConfig,
        AddTagConfig,
        RemoveTagConfig,
        CreateActivityConfig,
        ExitConfig,
    ],
    Field(discriminator="step_type"),
]

BRANCHING_STEP_TYPES = ("condition", "ai_decision")


def new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:16]}"


class JourneyStep(Document):
    step_id: Indexed(str, unique=True) = Field(default_factory=new_step_id)
    journey_id: Indexed(str)
    name: str = Field(..., examples=["Send welcome email"])
    description: Optional[str] = None
    position: int = 0
    position_x: float = 0
    position_y: float = 0
    config: StepConfig
    next_step_id: Optional[str] = None
    condition_true_step_id: Optional[str] = None
    condition_false_step_id: Optional[str] = None
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "journey_steps"

    @property
    def step_type(self) -> str:
        return self.config.step_type

    def outgoing_step_ids(self) -> List[str]:
        """Every step id this step can hand over to, in declaration order."""
        targets = [self.next_step_id, self.condition_true_step_id, self.condition_false_step_id]
        if isinstance(self.config, AIDecisionConfig):
            targets.extend(self.config.options.values())
        seen = []
        for target in targets:
            if target and target not in seen:
                seen.append(target)
        return seen
