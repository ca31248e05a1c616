import logging
from urllib.parse import unquote, urlparse

from beanie.operators import Inc
from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse, Response
from itsdangerous import BadSignature, SignatureExpired

from journey_engine.clock import utc_now
from journey_engine.config import TRACKING_TOKEN_MAX_AGE
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.step_execution import JourneyStepExecution
from journey_engine.services.email import serializer

logger = logging.getLogger(__name__)
router = APIRouter()

# 1x1 transparent GIF pixel
TRACKING_PIXEL = (
    b'\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00\xff\xff\xff'
    b'\x00\x00\x00\x21\xf9\x04\x01\x00\x00\x00\x00\x2c\x00\x00\x00\x00'
    b'\x01\x00\x01\x00\x00\x02\x02\x44\x01\x00\x3b'
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _pixel() -> Response:
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


def _decode(token: str, expected_type: str):
    """Execution id carried by a tracking token, or None when it can't be trusted."""
    try:
        data = serializer.loads(token, max_age=TRACKING_TOKEN_MAX_AGE)
    except SignatureExpired:
        logger.warning("[TRACKING] Expired tracking token received")
        return None
    except BadSignature:
        logger.warning("[TRACKING] Invalid tracking token received")
        return None
    if not isinstance(data, dict) or data.get("type") != expected_type:
        logger.warning(f"[TRACKING] Token is not a {expected_type} token")
        return None
    return data.get("execution_id")


async def record_open(execution_id: str) -> bool:
    """Mark the email of an execution as opened. Only the first open counts."""
    now = utc_now()
    result = await JourneyStepExecution.get_motor_collection().update_one(
        {"execution_id": execution_id, "email_message_id": {"$ne": None}, "email_opened_at": None},
        {"$set": {"email_opened_at": now}},
    )
    if result.modified_count == 0:
        return False

    execution = await JourneyStepExecution.find_one(JourneyStepExecution.execution_id == execution_id)
    await JourneyStepExecution.get_motor_collection().update_one(
        {"execution_id": execution_id, "email_status": "sent"},
        {"$set": {"email_status": "opened"}},
    )
    await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == execution.enrollment_id).update(
        Inc({JourneyEnrollment.emails_opened: 1})
    )
    logger.info(f"[TRACKING] Email open recorded for execution {execution_id}")
    return True


async def record_click(execution_id: str) -> bool:
    """Mark the email of an execution as clicked. A click implies an open."""
    now = utc_now()
    await record_open(execution_id)
    result = await JourneyStepExecution.get_motor_collection().update_one(
        {"execution_id": execution_id, "email_message_id": {"$ne": None}, "email_clicked_at": None},
        {"$set": {"email_clicked_at": now, "email_status": "clicked"}},
    )
    if result.modified_count == 0:
        return False

    execution = await JourneyStepExecution.find_one(JourneyStepExecution.execution_id == execution_id)
    await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == execution.enrollment_id).update(
        Inc({JourneyEnrollment.emails_clicked: 1})
    )
    logger.info(f"[TRACKING] Link click recorded for execution {execution_id}")
    return True


@router.get("/track/open")
async def track_email_open(token: str = Query(..., description="Signed tracking token")):
    """Tracks email opens via a signed token and always answers with the pixel."""
    execution_id = _decode(token, "open")
    if execution_id:
        try:
            await record_open(execution_id)
        except Exception as e:
            logger.error(f"[TRACKING] Error recording open for execution {execution_id}: {e}", exc_info=True)
    return _pixel()


@router.get("/track/click")
async def track_link_click(
    token: str = Query(..., description="Signed tracking token"),
    url: str = Query(..., description="Original URL"),
):
    """Tracks link clicks via a signed token, then redirects to the original URL."""
    original_url = unquote(url).strip()
    if urlparse(original_url).scheme not in ("http", "https"):
        raise HTTPException(status_code=400, detail="Invalid redirect URL")

    execution_id = _decode(token, "click")
    if execution_id:
        try:
            await record_click(execution_id)
        except Exception as e:
            logger.error(f"[TRACKING] Error recording click for execution {execution_id}: {e}", exc_info=True)
    return RedirectResponse(url=original_url, status_code=302)
