import uuid
from beanie import Document, Indexed
from pydantic import ConfigDict, Field
from typing import List, Optional
from datetime import datetime

from journey_engine.clock import utc_now

# Never overwritten by update_contact steps.
IDENTITY_FIELDS = frozenset({"id", "_id", "revision_id", "contact_id", "company_id", "created_at"})


def new_contact_id() -> str:
    return f"contact_{uuid.uuid4().hex[:16]}"


class Contact(Document):
    # CRM contacts carry arbitrary extra fields (lead_score, city, ...).
    model_config = ConfigDict(extra="allow")

    contact_id: Indexed(str, unique=True) = Field(default_factory=new_contact_id)
    company_id: Indexed(str)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    lifecycle_stage: Optional[str] = None
    ai_tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "crm_contacts"

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def as_record(self) -> dict:
        """Plain field view used for templates and condition checks."""
        return self.model_dump(exclude={"id", "revision_id"})
