import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from pydantic import BaseModel

from journey_engine.api.engine import get_engine
from journey_engine.api.serialization import to_public
from journey_engine.services import enrollments
from journey_engine.services.engine import JourneyEngine

logger = logging.getLogger(__name__)
router = APIRouter()


class EnrollRequest(BaseModel):
    contact_id: str
    context: Dict[str, Any] = {}


class ExitRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/journeys/{journey_id}/enrollments")
async def list_enrollments(
    journey_id: str,
    status: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    items = await enrollments.list_enrollments(journey_id, status, skip, limit)
    return {"enrollments": [to_public(e) for e in items]}


@router.post("/journeys/{journey_id}/enrollments", status_code=201)
async def enroll_contact(journey_id: str, body: EnrollRequest, engine: JourneyEngine = Depends(get_engine)):
    enrollment = await engine.enroll_contact(journey_id, body.contact_id, body.context, source="manual")
    return to_public(enrollment)


@router.post("/journeys/{journey_id}/import")
async def import_contacts(journey_id: str, file: UploadFile = File(...), engine: JourneyEngine = Depends(get_engine)):
    content = await file.read()
    logger.info(f"[IMPORT] Received {file.filename} ({len(content)} bytes) for journey {journey_id}")
    return await enrollments.import_contacts(engine, journey_id, content)


@router.get("/journeys/{journey_id}/stats")
async def journey_stats(journey_id: str):
    return await enrollments.journey_stats(journey_id)


@router.get("/enrollments/{enrollment_id}")
async def get_enrollment(enrollment_id: str):
    return to_public(await enrollments.get_enrollment(enrollment_id))


@router.get("/enrollments/{enrollment_id}/executions")
async def list_executions(enrollment_id: str):
    executions = await enrollments.list_executions(enrollment_id)
    return {"executions": [to_public(e) for e in executions]}


@router.post("/enrollments/{enrollment_id}/exit")
async def exit_enrollment(enrollment_id: str, body: Optional[ExitRequest] = None):
    enrollment = await enrollments.exit_enrollment(enrollment_id, body.reason if body else None)
    return to_public(enrollment)


@router.post("/enrollments/{enrollment_id}/pause")
async def pause_enrollment(enrollment_id: str):
    return to_public(await enrollments.pause_enrollment(enrollment_id))


@router.post("/enrollments/{enrollment_id}/resume")
async def resume_enrollment(enrollment_id: str, engine: JourneyEngine = Depends(get_engine)):
    enrollment, result = await enrollments.resume_enrollment(engine, enrollment_id)
    return {"enrollment": to_public(enrollment), "result": result}
