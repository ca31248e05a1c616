import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from journey_engine.api.serialization import to_public
from journey_engine.services import builder

logger = logging.getLogger(__name__)
router = APIRouter()


class JourneyCreateRequest(BaseModel):
    company_id: str
    name: str
    description: Optional[str] = None
    trigger_type: str = "manual"
    trigger_conditions: Dict[str, Any] = {}
    allow_re_enrollment: bool = False
    tags: List[str] = []


class JourneyCloneRequest(BaseModel):
    name: Optional[str] = None


class StepCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    position: Optional[int] = None
    position_x: float = 0
    position_y: float = 0
    config: Dict[str, Any]
    next_step_id: Optional[str] = None
    condition_true_step_id: Optional[str] = None
    condition_false_step_id: Optional[str] = None


class ConnectRequest(BaseModel):
    target_step_id: str
    edge: str = "next"


class DisconnectRequest(BaseModel):
    edge: str = "next"


class StepPosition(BaseModel):
    step_id: str
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    position: Optional[int] = None


class PositionsRequest(BaseModel):
    positions: List[StepPosition]


@router.get("/journeys")
async def list_journeys(company_id: str = Query(...), status: Optional[str] = Query(None)):
    journeys = await builder.list_journeys(company_id, status)
    return {"journeys": [to_public(j) for j in journeys]}


@router.post("/journeys", status_code=201)
async def create_journey(body: JourneyCreateRequest):
    journey = await builder.create_journey(body.model_dump())
    return to_public(journey)


@router.get("/journeys/{journey_id}")
async def get_journey(journey_id: str):
    journey = await builder.get_journey(journey_id)
    steps = await builder.list_steps(journey_id)
    return {**to_public(journey), "steps": [to_public(s) for s in steps]}


@router.patch("/journeys/{journey_id}")
async def update_journey(journey_id: str, updates: Dict[str, Any]):
    return to_public(await builder.update_journey(journey_id, updates))


@router.delete("/journeys/{journey_id}")
async def delete_journey(journey_id: str):
    deleted = await builder.delete_journey(journey_id)
    return {"message": "Journey deleted", "journey_id": journey_id, "deleted": deleted}


@router.post("/journeys/{journey_id}/pause")
async def pause_journey(journey_id: str):
    return to_public(await builder.pause_journey(journey_id))


@router.post("/journeys/{journey_id}/activate")
async def activate_journey(journey_id: str):
    journey, validation = await builder.activate_journey(journey_id)
    if not validation.valid:
        raise HTTPException(
            status_code=400,
            detail={"message": "Journey failed validation", "validation": validation.as_dict()},
        )
    return {"journey": to_public(journey), "validation": validation.as_dict()}


@router.get("/journeys/{journey_id}/validate")
async def validate_journey(journey_id: str):
    return (await builder.validate(journey_id)).as_dict()


@router.post("/journeys/{journey_id}/clone", status_code=201)
async def clone_journey(journey_id: str, body: Optional[JourneyCloneRequest] = None):
    clone = await builder.clone_journey(journey_id, body.name if body else None)
    return to_public(clone)


@router.get("/journeys/{journey_id}/steps")
async def list_steps(journey_id: str):
    await builder.get_journey(journey_id)
    return {"steps": [to_public(s) for s in await builder.list_steps(journey_id)]}


@router.post("/journeys/{journey_id}/steps", status_code=201)
async def create_step(journey_id: str, body: StepCreateRequest):
    step = await builder.create_step(journey_id, body.model_dump())
    return to_public(step)


@router.put("/journeys/{journey_id}/positions")
async def update_positions(journey_id: str, body: PositionsRequest):
    steps = await builder.update_positions(journey_id, [p.model_dump() for p in body.positions])
    return {"steps": [to_public(s) for s in steps]}


@router.patch("/steps/{step_id}")
async def update_step(step_id: str, updates: Dict[str, Any]):
    return to_public(await builder.update_step(step_id, updates))


@router.delete("/steps/{step_id}")
async def delete_step(step_id: str):
    touched = await builder.delete_step(step_id)
    return {"message": "Step deleted", "step_id": step_id, "edges_cleared": touched}


@router.post("/steps/{step_id}/connect")
async def connect_steps(step_id: str, body: ConnectRequest):
    return to_public(await builder.connect_steps(step_id, body.target_step_id, body.edge))


@router.post("/steps/{step_id}/disconnect")
async def disconnect_steps(step_id: str, body: DisconnectRequest):
    return to_public(await builder.disconnect_steps(step_id, body.edge))
