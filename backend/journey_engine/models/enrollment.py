import uuid
from beanie import Document, Indexed
from pydantic import Field
from typing import Literal, Optional
from datetime import datetime

from journey_engine.clock import utc_now

EnrollmentStatus = Literal["active", "completed", "paused", "failed", "exited"]
EnrollmentSource = Literal["api", "trigger", "manual", "import"]


def new_enrollment_id() -> str:
    return f"enrollment_{uuid.uuid4().hex[:16]}"


class JourneyEnrollment(Document):
    enrollment_id: Indexed(str, unique=True) = Field(default_factory=new_enrollment_id)
    journey_id: Indexed(str)
    contact_id: Indexed(str)
    company_id: str
    current_step_id: Optional[str] = None
    status: EnrollmentStatus = "active"
    enrollment_source: EnrollmentSource = "api"
    context: dict = Field(default_factory=dict)
    steps_completed: int = 0
    emails_sent: int = 0
    emails_opened: int = 0
    emails_clicked: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    # lease held by the invocation currently driving this enrollment
    locked_until: Optional[datetime] = None
    lock_token: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "journey_enrollments"
