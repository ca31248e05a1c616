import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from journey_engine.api.serialization import to_public
from journey_engine.errors import InvalidRequestError, JourneyEngineError
from journey_engine.services.engine import JourneyEngine, build_engine

logger = logging.getLogger(__name__)
router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


class EngineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Optional[str] = None
    enrollment_id: Optional[str] = Field(None, alias="enrollmentId")
    journey_id: Optional[str] = Field(None, alias="journeyId")
    contact_id: Optional[str] = Field(None, alias="contactId")
    context: Optional[Dict[str, Any]] = None
    trigger_type: Optional[str] = Field(None, alias="triggerType")
    trigger_data: Optional[Dict[str, Any]] = Field(None, alias="triggerData")


@lru_cache()
def get_engine() -> JourneyEngine:
    return build_engine()


def _envelope(status_code: int, **body) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers=CORS_HEADERS)


async def _dispatch(engine: JourneyEngine, req: EngineRequest):
    if req.action == "enroll_contact":
        if not req.journey_id or not req.contact_id:
            raise InvalidRequestError("Journey ID and Contact ID are required")
        enrollment = await engine.enroll_contact(req.journey_id, req.contact_id, req.context or {})
        return to_public(enrollment)

    if req.action == "process_step":
        if not req.enrollment_id:
            raise InvalidRequestError("Enrollment ID is required")
        return await engine.process_step(req.enrollment_id)

    if req.action == "process_scheduled":
        return await engine.process_scheduled_executions()

    if req.action == "trigger_check":
        return await engine.check_triggers(req.trigger_type, req.trigger_data or {})

    raise InvalidRequestError(f"Unknown action: {req.action}")


@router.options("/journey-engine")
async def journey_engine_preflight():
    return Response(status_code=200, headers=CORS_HEADERS)


@router.post("/journey-engine")
async def journey_engine(request: Request, engine: JourneyEngine = Depends(get_engine)):
    """Single entry point used by the CRM: enroll, process, sweep and trigger checks."""
    try:
        payload = await request.json()
        req = EngineRequest.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning(f"[JOURNEY_API] Malformed request body: {e}")
        return _envelope(400, success=False, error="Invalid request body")

    logger.info(f"[JOURNEY_API] Action: {req.action}")
    try:
        data = await _dispatch(engine, req)
        return _envelope(200, success=True, data=data)
    except JourneyEngineError as e:
        level = logging.ERROR if e.status_code >= 500 else logging.WARNING
        logger.log(level, f"[JOURNEY_API] {req.action} failed: {e.message}")
        return _envelope(e.status_code, success=False, error=e.message)
    except Exception as e:
        logger.error(f"[JOURNEY_API] {req.action} failed unexpectedly: {e}", exc_info=True)
        return _envelope(500, success=False, error=str(e))
