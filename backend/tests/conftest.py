from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from journey_engine.db.init import init_models
from journey_engine.models.contact import Contact
from journey_engine.models.journey import JourneyDefinition
from journey_engine.models.journey_step import JourneyStep
from journey_engine.services.engine import JourneyEngine

COMPANY_ID = "company_acme"


class FakeClock:
    """Controllable clock; whole seconds so Mongo round-trips compare equal."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeEmailSender:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def send(self, to, subject, html_content, recipient_name="", tracking_id=None):
        if self.error:
            raise self.error
        self.sent.append({
            "to": to,
            "subject": subject,
            "html_content": html_content,
            "recipient_name": recipient_name,
            "tracking_id": tracking_id,
        })
        return f"<msg-{len(self.sent)}@journeys.test>"


class FakeAIClient:
    def __init__(self, answer: str = "", error: Optional[Exception] = None):
        self.answer = answer
        self.error = error
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, temperature=0.3):
        self.calls.append(messages)
        if self.error:
            raise self.error
        return self.answer


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["journey_engine_test"]
    await init_models(database)
    yield database


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def ai_client():
    return FakeAIClient(answer="hot")


@pytest.fixture
def engine(db, clock, email_sender, ai_client):
    return JourneyEngine(email_sender=email_sender, ai_client=ai_client, clock=clock)


async def create_contact(contact_id: str = "contact_ana", **fields) -> Contact:
    data = {
        "company_id": COMPANY_ID,
        "first_name": "Ana",
        "last_name": "Ruiz",
        "email": "ana@example.com",
        "lifecycle_stage": "lead",
        **fields,
    }
    contact = Contact(contact_id=contact_id, **data)
    await contact.insert()
    return contact


async def create_journey(journey_id: str = "journey_welcome", steps: Optional[List[Dict[str, Any]]] = None, **fields) -> JourneyDefinition:
    """Insert a journey and its steps; each step dict may carry an explicit step_id and edges."""
    data = {"company_id": COMPANY_ID, "name": "Welcome", "status": "active", **fields}
    journey = JourneyDefinition(journey_id=journey_id, **data)
    await journey.insert()
    for position, step in enumerate(steps or []):
        step = {"name": step.get("step_id", f"step {position}"), "position": position, **step}
        await JourneyStep.model_validate({"journey_id": journey_id, **step}).insert()
    return journey


def email_step(step_id: str, next_step_id: Optional[str] = None, subject: str = "Hi {{first_name}}", body: str = "<p>Welcome {{first_name}}</p>") -> Dict[str, Any]:
    return {
        "step_id": step_id,
        "config": {"step_type": "send_email", "subject": subject, "body": body},
        "next_step_id": next_step_id,
    }


def delay_step(step_id: str, next_step_id: Optional[str] = None, amount: float = 2, unit: str = "days") -> Dict[str, Any]:
    return {
        "step_id": step_id,
        "config": {"step_type": "delay", "amount": amount, "unit": unit},
        "next_step_id": next_step_id,
    }


def exit_step(step_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    return {"step_id": step_id, "config": {"step_type": "exit", "reason": reason}}
