import logging
from io import BytesIO, StringIO
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd
from beanie.operators import Set

from journey_engine.clock import utc_now
from journey_engine.errors import ConflictError, InvalidRequestError, NotFoundError
from journey_engine.models.contact import Contact
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import JourneyDefinition
from journey_engine.models.journey_step import JourneyStep
from journey_engine.models.step_execution import JourneyStepExecution

logger = logging.getLogger(__name__)

ENROLLMENT_STATUSES = ("active", "completed", "paused", "failed", "exited")


async def get_enrollment(enrollment_id: str) -> JourneyEnrollment:
    enrollment = await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment_id)
    if not enrollment:
        raise NotFoundError("Enrollment not found")
    return enrollment


async def list_enrollments(journey_id: str, status: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[JourneyEnrollment]:
    filters = [JourneyEnrollment.journey_id == journey_id]
    if status:
        filters.append(JourneyEnrollment.status == status)
    return await JourneyEnrollment.find(*filters).sort(-JourneyEnrollment.created_at).skip(skip).limit(limit).to_list()


async def list_executions(enrollment_id: str) -> List[JourneyStepExecution]:
    await get_enrollment(enrollment_id)
    return await JourneyStepExecution.find(
        JourneyStepExecution.enrollment_id == enrollment_id
    ).sort(+JourneyStepExecution.created_at).to_list()


async def _transition(enrollment_id: str, from_statuses: Tuple[str, ...], set_fields: Dict[str, Any]) -> JourneyEnrollment:
    result = await JourneyEnrollment.get_motor_collection().update_one(
        {"enrollment_id": enrollment_id, "status": {"$in": list(from_statuses)}},
        {"$set": set_fields},
    )
    if result.modified_count == 0:
        enrollment = await get_enrollment(enrollment_id)
        raise ConflictError(f"Enrollment is {enrollment.status}; expected one of {', '.join(from_statuses)}")
    return await get_enrollment(enrollment_id)


async def exit_enrollment(enrollment_id: str, reason: Optional[str] = None) -> JourneyEnrollment:
    now = utc_now()
    enrollment = await _transition(
        enrollment_id,
        ("active", "paused"),
        {"status": "exited", "exited_at": now, "exit_reason": reason or "Exited manually"},
    )
    # Parked delays and queued steps will never run now.
    await JourneyStepExecution.find(
        JourneyStepExecution.enrollment_id == enrollment_id,
        {"status": {"$in": ["pending", "scheduled"]}},
    ).update(Set({JourneyStepExecution.status: "skipped", JourneyStepExecution.executed_at: now}))
    logger.info(f"[ENROLLMENT] Enrollment {enrollment_id} exited: {enrollment.exit_reason}")
    return enrollment


async def pause_enrollment(enrollment_id: str) -> JourneyEnrollment:
    enrollment = await _transition(enrollment_id, ("active",), {"status": "paused"})
    logger.info(f"[ENROLLMENT] Enrollment {enrollment_id} paused at step {enrollment.current_step_id}")
    return enrollment


async def resume_enrollment(engine, enrollment_id: str) -> Tuple[JourneyEnrollment, Dict[str, Any]]:
    await _transition(enrollment_id, ("paused",), {"status": "active"})
    logger.info(f"[ENROLLMENT] Enrollment {enrollment_id} resumed")
    result = await engine.process_step(enrollment_id)
    return await get_enrollment(enrollment_id), result


async def journey_stats(journey_id: str) -> Dict[str, Any]:
    journey = await JourneyDefinition.find_one(JourneyDefinition.journey_id == journey_id)
    if not journey:
        raise NotFoundError("Journey not found")

    by_status = {}
    for status in ENROLLMENT_STATUSES:
        by_status[status] = await JourneyEnrollment.find(
            JourneyEnrollment.journey_id == journey_id,
            JourneyEnrollment.status == status,
        ).count()

    enrollments = await JourneyEnrollment.find(JourneyEnrollment.journey_id == journey_id).to_list()
    emails_sent = sum(e.emails_sent for e in enrollments)
    emails_opened = sum(e.emails_opened for e in enrollments)
    emails_clicked = sum(e.emails_clicked for e in enrollments)

    steps = await JourneyStep.find(JourneyStep.journey_id == journey_id).sort(+JourneyStep.position).to_list()
    return {
        "journey_id": journey_id,
        "total_enrolled": journey.total_enrolled,
        "total_completed": journey.total_completed,
        "enrollments_by_status": by_status,
        "emails": {
            "sent": emails_sent,
            "opened": emails_opened,
            "clicked": emails_clicked,
            "open_rate": round(emails_opened / emails_sent, 4) if emails_sent else 0.0,
            "click_rate": round(emails_clicked / emails_sent, 4) if emails_sent else 0.0,
        },
        "steps": [
            {
                "step_id": s.step_id,
                "name": s.name,
                "step_type": s.step_type,
                "total_executions": s.total_executions,
                "successful_executions": s.successful_executions,
                "failed_executions": s.failed_executions,
            }
            for s in steps
        ],
    }


def parse_contact_file(content: Union[str, bytes]) -> List[Dict[str, str]]:
    """Read a CSV of contacts; an ``email`` column is required."""
    if not content:
        return []
    try:
        source = BytesIO(content) if isinstance(content, bytes) else StringIO(content)
        df = pd.read_csv(source, dtype=str)
    except Exception as e:
        raise InvalidRequestError(f"Invalid CSV format: {e}")

    df.columns = [str(h).strip().lower() for h in df.columns]
    if "email" not in df.columns:
        raise InvalidRequestError("CSV must contain 'email' column.")
    df = df.fillna("")

    if "name" in df.columns:
        split = df["name"].str.strip().str.split(" ", n=1, expand=True).reindex(columns=[0, 1]).fillna("")
        if "first_name" not in df.columns:
            df["first_name"] = split[0]
        if "last_name" not in df.columns:
            df["last_name"] = split[1]
    for column in ("first_name", "last_name"):
        if column not in df.columns:
            df[column] = ""

    rows = df[["email", "first_name", "last_name"]].to_dict("records")
    return [{k: str(v).strip() for k, v in row.items()} for row in rows]


async def _upsert_contact(company_id: str, row: Dict[str, str]) -> Contact:
    contact = await Contact.find_one(Contact.company_id == company_id, Contact.email == row["email"])
    if contact:
        return contact
    contact = Contact(
        company_id=company_id,
        email=row["email"],
        first_name=row.get("first_name") or None,
        last_name=row.get("last_name") or None,
    )
    await contact.insert()
    return contact


async def import_contacts(engine, journey_id: str, content: Union[str, bytes], context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Upsert the file's contacts and enroll each one; row failures are collected."""
    journey = await JourneyDefinition.find_one(
        JourneyDefinition.journey_id == journey_id,
        JourneyDefinition.status == "active",
    )
    if not journey:
        raise NotFoundError("Journey not found or not active")

    rows = parse_contact_file(content)
    enrolled, failed = [], []
    for index, row in enumerate(rows, start=1):
        if not row["email"]:
            failed.append({"row": index, "email": "", "error": "Missing email"})
            continue
        try:
            contact = await _upsert_contact(journey.company_id, row)
            enrollment = await engine.enroll_contact(journey_id, contact.contact_id, context=context, source="import")
            enrolled.append({"row": index, "contact_id": contact.contact_id, "enrollment_id": enrollment.enrollment_id})
        except Exception as e:
            enrollment_id = getattr(e, "enrollment_id", None)
            if enrollment_id:
                logger.error(f"[IMPORT] Row {index} ({row['email']}) enrolled as {enrollment_id} but its first step failed: {e}")
                enrolled.append({"row": index, "contact_id": contact.contact_id, "enrollment_id": enrollment_id, "error": str(e)})
                continue
            logger.error(f"[IMPORT] Row {index} ({row['email']}) failed: {e}")
            failed.append({"row": index, "email": row["email"], "error": str(e)})

    logger.info(f"[IMPORT] Journey {journey_id}: {len(enrolled)} enrolled, {len(failed)} failed out of {len(rows)} rows")
    return {"total": len(rows), "enrolled": enrolled, "failed": failed}
