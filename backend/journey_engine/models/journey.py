import uuid
from beanie import Document, Indexed
from pydantic import Field
from typing import List, Literal, Optional
from datetime import datetime

from journey_engine.clock import utc_now

JourneyStatus = Literal["draft", "active", "paused", "archived"]

TriggerType = Literal[
    "manual",
    "lifecycle_change",
    "tag_added",
    "deal_created",
    "deal_stage_changed",
    "contact_created",
    "form_submit",
    "inbound_email",
    "activity_completed",
    "ai_triggered",
]


def new_journey_id() -> str:
    return f"journey_{uuid.uuid4().hex[:16]}"


class JourneyDefinition(Document):
    journey_id: Indexed(str, unique=True) = Field(default_factory=new_journey_id)
    company_id: Indexed(str)
    name: str = Field(..., examples=["Welcome Journey"])
    description: Optional[str] = None
    status: JourneyStatus = "draft"
    trigger_type: TriggerType = "manual"
    trigger_conditions: dict = Field(default_factory=dict)
    allow_re_enrollment: bool = False
    tags: List[str] = Field(default_factory=list)
    total_enrolled: int = 0
    total_completed: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "journey_definitions"
