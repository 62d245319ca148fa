"""JSON state file holding scheduled one-shot jobs and the guardrail ledger.

The whole document is rewritten on every save (temp file + rename), and a save
completes before the mutating operation that triggered it returns.
"""
import asyncio, json, logging, os, tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("store")

class SetEntityAction(BaseModel):
    type: Literal["set_hb_entity"] = "set_hb_entity"
    entity_id: str
    on: Optional[bool] = None
    brightness: Optional[float] = Field(default=None, allow_inf_nan=False)

class RestartHostAction(BaseModel):
    type: Literal["restart_homebridge"] = "restart_homebridge"
    reason: str

JobAction = Annotated[Union[SetEntityAction, RestartHostAction], Field(discriminator="type")]

class ScheduledAction(BaseModel):
    id: str
    created_at: str
    run_at: str  # ISO-8601, kept verbatim so sync() can prune unparseable values
    action: JobAction

def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()

class ActionQuota(BaseModel):
    date: str = Field(default_factory=utc_today)
    count: int = 0

class PersistentState(BaseModel):
    one_shot_jobs: List[ScheduledAction] = []
    command_cooldowns: Dict[str, str] = {}
    action_quota: ActionQuota = Field(default_factory=ActionQuota)

def _parse_state(raw: object) -> PersistentState:
    if not isinstance(raw, dict):
        raise ValueError("state document is not an object")
    jobs, dropped = [], 0
    for item in raw.get("one_shot_jobs") or []:
        try:
            jobs.append(ScheduledAction.model_validate(item))
        except ValidationError:
            dropped += 1
    if dropped:
        log.warning("Dropped %d invalid scheduled job(s) from state file", dropped)

    cooldowns = raw.get("command_cooldowns")
    quota = raw.get("action_quota")
    try:
        action_quota = ActionQuota.model_validate(quota) if isinstance(quota, dict) else ActionQuota()
    except ValidationError:
        action_quota = ActionQuota()
    return PersistentState(
        one_shot_jobs=jobs,
        command_cooldowns={str(k): str(v) for k, v in cooldowns.items()} if isinstance(cooldowns, dict) else {},
        action_quota=action_quota,
    )

class StateStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.state = PersistentState()
        self._lock = asyncio.Lock()

    async def load(self) -> PersistentState:
        self.state = await asyncio.to_thread(self._read)
        return self.state

    def _read(self) -> PersistentState:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return _parse_state(raw)
        except FileNotFoundError:
            return PersistentState()
        except (OSError, ValueError) as e:
            log.warning("Failed to load persisted state from %s: %s", self.path, e)
            return PersistentState()

    async def save(self) -> None:
        # serialized so an older snapshot can never land after a newer one
        async with self._lock:
            payload = self.state.model_dump_json(indent=2)
            await asyncio.to_thread(self._write, payload)

    def _write(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
