import uuid
from beanie import Document, Indexed
from pydantic import Field
from typing import Literal, Optional
from datetime import datetime

from journey_engine.clock import utc_now

ExecutionStatus = Literal["pending", "executing", "executed", "failed", "scheduled", "skipped"]


def new_execution_id() -> str:
    return f"execution_{uuid.uuid4().hex[:16]}"


class JourneyStepExecution(Document):
    """
    One attempt to run a step for an enrollment. Rows are kept after they
    finish so an enrollment's history can be audited.
    """
    execution_id: Indexed(str, unique=True) = Field(default_factory=new_execution_id)
    enrollment_id: Indexed(str)
    step_id: str
    status: ExecutionStatus = "pending"
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    result: dict = Field(default_factory=dict)
    error_message: Optional[str] = None
    retry_count: int = 0
    decision_made: Optional[str] = None
    email_message_id: Optional[str] = None
    email_status: Optional[Literal["sent", "opened", "clicked"]] = None
    email_opened_at: Optional[datetime] = None
    email_clicked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "journey_step_executions"
