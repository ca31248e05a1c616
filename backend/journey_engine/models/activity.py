import uuid
from beanie import Document, Indexed
from pydantic import Field
from typing import Optional
from datetime import datetime

from journey_engine.clock import utc_now


def new_activity_id() -> str:
    return f"activity_{uuid.uuid4().hex[:16]}"


class Activity(Document):
    activity_id: Indexed(str, unique=True) = Field(default_factory=new_activity_id)
    company_id: str
    contact_id: Indexed(str)
    activity_type: str = "task"
    subject: str
    description: Optional[str] = None
    activity_date: datetime = Field(default_factory=utc_now)
    ai_generated: bool = False

    class Settings:
        name = "crm_activities"
