import asyncio, math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .durations import format_delay_short, parse_duration
from .errors import (
    BridgeError, EndpointUnreachable, EntityNotFound, InvalidValue, ProtocolError, UnsupportedCapability,
)
from .guardrail import Proposal
from .mappings import GROUP_KINDS, clamp_brightness
from .scheduler import parse_run_at
from .services import Services
from .store import RestartHostAction, ScheduledAction, SetEntityAction

router = APIRouter(prefix="/api/v1")

MAX_QUERY_TARGETS = 5

class CommandRequest(BaseModel):
    entity_id: str
    on: Optional[bool] = None
    brightness: Optional[float] = None
    actor: Optional[str] = "api"

class TargetCommandRequest(BaseModel):
    targets: str = Field(min_length=1)
    on: bool
    actor: Optional[str] = "api"

class ScheduleRequest(BaseModel):
    targets: str = Field(min_length=1)
    on: Optional[bool] = None
    brightness: Optional[float] = None
    delay: Optional[str] = None
    run_at: Optional[datetime] = None

class RestartRequest(BaseModel):
    reason: str = "requested via api"
    delay: Optional[str] = None
    run_at: Optional[datetime] = None

class RunCommandRequest(BaseModel):
    command_id: str
    reason: str = "manual-run"

class ProposalModel(BaseModel):
    command_id: str
    reason: str = "remediation"

class RemediateRequest(BaseModel):
    proposals: List[ProposalModel]

def get_services(request: Request) -> Services:
    return request.app.state.services

def _http_error(e: BridgeError) -> HTTPException:
    if isinstance(e, EntityNotFound):
        return HTTPException(404, str(e))
    if isinstance(e, (UnsupportedCapability, InvalidValue)):
        return HTTPException(400, str(e))
    if isinstance(e, (ProtocolError, EndpointUnreachable)):
        return HTTPException(502, str(e))
    return HTTPException(500, str(e))

def _check_brightness(value: Optional[float]) -> None:
    # the JSON parser lets NaN and Infinity through
    if value is not None and not math.isfinite(value):
        raise HTTPException(400, "brightness must be a finite number")

def _resolve_run_at(delay: Optional[str], run_at: Optional[datetime]) -> datetime:
    if run_at is not None:
        run_at = run_at if run_at.tzinfo else run_at.replace(tzinfo=timezone.utc)
        if run_at <= datetime.now(timezone.utc):
            raise HTTPException(400, "run_at must be in the future")
        return run_at
    seconds = parse_duration(delay or "")
    if not seconds:
        raise HTTPException(400, "Provide a positive delay (e.g. '30m', '1h 15m', '90') or run_at")
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)

def describe_job(job: ScheduledAction, svc: Services) -> str:
    run_at = parse_run_at(job.run_at)
    rel = ""
    if run_at is not None:
        rel = f" (in {format_delay_short((run_at - datetime.now(timezone.utc)).total_seconds())})"
    a = job.action
    if isinstance(a, SetEntityAction):
        entity = svc.registry.get_entity(a.entity_id)
        target = entity.name if entity else a.entity_id
        state = "UNCHANGED" if a.on is None else ("ON" if a.on else "OFF")
        bright = f" | {clamp_brightness(a.brightness)}%" if a.brightness is not None else ""
        return f"{job.run_at}{rel} | set {target}: {state}{bright}"
    return f"{job.run_at}{rel} | restart Homebridge ({a.reason})"

def _job_dict(job: ScheduledAction, svc: Services) -> Dict[str, Any]:
    return {**job.model_dump(), "description": describe_job(job, svc)}

@router.get("/bridges")
async def list_bridges(svc: Services = Depends(get_services)):
    endpoints = list(svc.registry.endpoints)

    async def reachable(username: str) -> bool:
        client = svc.registry.client_for(username)
        return await client.ping() if client else False

    flags = await asyncio.gather(*(reachable(ep.username) for ep in endpoints))
    return [
        {"username": ep.username, "name": ep.name, "port": ep.port, "role": ep.role, "reachable": ok}
        for ep, ok in zip(endpoints, flags)
    ]

@router.get("/entities")
def list_entities(q: Optional[str] = None, kind: Optional[str] = None, svc: Services = Depends(get_services)):
    return [e.to_dict() for e in svc.registry.list_entities(q, kind=kind)]

@router.get("/entities/{entity_id}")
def get_entity(entity_id: str, svc: Services = Depends(get_services)):
    e = svc.registry.get_entity(entity_id)
    if not e:
        raise HTTPException(404, "Entity not found")
    return e.to_dict()

@router.post("/refresh")
async def refresh(svc: Services = Depends(get_services)):
    count = await svc.registry.refresh("manual")
    return {"entities": count, "last_refresh_at": svc.registry.last_refresh_at}

@router.post("/command")
async def set_entity(req: CommandRequest, svc: Services = Depends(get_services)):
    _check_brightness(req.brightness)
    try:
        entity = await svc.registry.set_entity(req.entity_id, on=req.on, brightness=req.brightness)
    except BridgeError as e:
        svc.audit.record(req.actor or "api", "set_hb_entity", "entity", req.entity_id,
                         {"on": req.on, "brightness": req.brightness, "ok": False, "error": str(e)})
        raise _http_error(e) from e
    svc.audit.record(req.actor or "api", "set_hb_entity", "entity", req.entity_id,
                     {"on": req.on, "brightness": req.brightness, "ok": True})
    return entity.to_dict()

@router.post("/targets/command")
async def set_targets(req: TargetCommandRequest, svc: Services = Depends(get_services)):
    is_group = req.targets.strip().lower() in GROUP_KINDS
    targets = svc.registry.resolve_targets(req.targets)
    if not targets:
        raise HTTPException(404, "No matching entities.")
    if not is_group and len(targets) > MAX_QUERY_TARGETS:
        preview = [f"{e.id} | {e.kind} | {e.name}" for e in targets[:MAX_QUERY_TARGETS]]
        raise HTTPException(409, {"message": f"Matched {len(targets)} entities. Be more specific.",
                                  "preview": preview})

    results = []
    for e in targets:
        # one failing bridge must not stop the others
        try:
            updated = await svc.registry.set_entity(e.id, on=req.on)
            results.append({"entity_id": e.id, "ok": True,
                            "message": f"Set {updated.name}: {'ON' if updated.state.on else 'OFF'}"})
        except BridgeError as err:
            results.append({"entity_id": e.id, "ok": False, "message": f"Failed to set {e.name}: {err}"})
        svc.audit.record(req.actor or "api", "set_hb_entity", "entity", e.id,
                         {"on": req.on, "ok": results[-1]["ok"]})
    return {"results": results}

@router.get("/jobs")
def list_jobs(svc: Services = Depends(get_services)):
    return [_job_dict(j, svc) for j in svc.scheduler.list_scheduled()]

@router.post("/jobs")
async def schedule_entities(req: ScheduleRequest, svc: Services = Depends(get_services)):
    if req.on is None and req.brightness is None:
        raise HTTPException(400, "Nothing to schedule: set 'on' and/or 'brightness'")
    _check_brightness(req.brightness)
    run_at = _resolve_run_at(req.delay, req.run_at)
    targets = svc.registry.resolve_targets(req.targets)
    if not targets:
        raise HTTPException(404, "No matching entities.")
    if req.brightness is not None:
        unsupported = [e.name for e in targets if e.kind != "light" or e.hap.brightness_iid is None]
        if unsupported:
            raise HTTPException(400, f"Brightness not supported for: {', '.join(unsupported)}")
    actions = [SetEntityAction(entity_id=e.id, on=req.on, brightness=req.brightness) for e in targets]
    jobs = await svc.scheduler.schedule(run_at, actions)
    return [_job_dict(j, svc) for j in jobs]

@router.post("/jobs/restart")
async def schedule_restart(req: RestartRequest, svc: Services = Depends(get_services)):
    run_at = _resolve_run_at(req.delay, req.run_at)
    job = await svc.scheduler.schedule_one(run_at, RestartHostAction(reason=req.reason))
    return _job_dict(job, svc)

@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, svc: Services = Depends(get_services)):
    if not await svc.scheduler.cancel(job_id):
        raise HTTPException(404, "Job not found.")
    return {"cancelled": job_id}

@router.delete("/jobs")
async def clear_jobs(svc: Services = Depends(get_services)):
    return {"cleared": await svc.scheduler.clear()}

@router.get("/commands")
def list_commands(svc: Services = Depends(get_services)):
    return {"enabled": svc.guardrail.enabled,
            "max_actions_per_day": svc.guardrail.max_actions_per_day,
            "commands": [c.model_dump() for c in svc.guardrail.list_commands()]}

async def _run_proposals(proposals: List[Proposal], svc: Services):
    if not svc.guardrail.enabled:
        raise HTTPException(409, "Self-healing is disabled. Set SELF_HEALING_ENABLED=true to allow commands.")
    results = await svc.guardrail.run(proposals)
    return {
        "results": [{"outcome": r.outcome.value, "command_id": r.command_id, "message": r.message} for r in results],
        "text": "\n".join(f"- {r}" for r in results) or "No actions executed.",
    }

@router.post("/commands/run")
async def run_command(req: RunCommandRequest, svc: Services = Depends(get_services)):
    return await _run_proposals([Proposal(req.command_id, req.reason)], svc)

@router.post("/remediate")
async def remediate(req: RemediateRequest, svc: Services = Depends(get_services)):
    return await _run_proposals([Proposal(p.command_id, p.reason) for p in req.proposals], svc)

@router.get("/audit")
async def recent_audit(limit: int = Query(50, ge=1, le=500), svc: Services = Depends(get_services)):
    return await asyncio.to_thread(svc.audit.recent, limit)
