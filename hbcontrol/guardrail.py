"""Gate for automatically proposed remediation commands.

Proposals are processed in order. The daily quota is a circuit breaker: once it
is reached nothing further runs that day. Unknown ids and commands still in
their cooldown are skipped individually. Only a successful run consumes quota
and starts a cooldown.
"""
import asyncio, logging, math, os, signal
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from .settings import HealingCommand
from .store import StateStore

log = logging.getLogger("guardrail")

OUTPUT_CAP_BYTES = 128 * 1024
REPORT_CHARS = 200

class Outcome(str, Enum):
    EXECUTED = "executed"
    SKIPPED_UNKNOWN = "skipped_unknown"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_QUOTA = "skipped_quota"
    FAILED = "failed"

@dataclass
class Proposal:
    command_id: str
    reason: str = "manual-run"

@dataclass
class GuardrailResult:
    outcome: Outcome
    message: str
    command_id: Optional[str] = None

    def __str__(self) -> str:
        return self.message

class CommandFailed(Exception):
    pass

def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # the shell runs in its own session so its children die with it
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass

async def _read_capped(proc: asyncio.subprocess.Process, stream: asyncio.StreamReader, cap: int) -> bytes:
    """Read until EOF or until more than ``cap`` bytes arrived; never holds more than ``cap + 1``."""
    buf = bytearray()
    while True:
        chunk = await stream.read(cap + 1 - len(buf))
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)
        if len(buf) > cap:
            _kill_group(proc)
            return bytes(buf)

async def run_shell(command: str, timeout: float, cap: int = OUTPUT_CAP_BYTES) -> str:
    proc = await asyncio.create_subprocess_shell(
        command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE, start_new_session=True
    )

    async def collect():
        streams = await asyncio.gather(_read_capped(proc, proc.stdout, cap), _read_capped(proc, proc.stderr, cap))
        await proc.wait()
        return streams

    try:
        stdout, stderr = await asyncio.wait_for(collect(), timeout)
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        raise CommandFailed(f"timed out after {timeout:g}s")
    if len(stdout) > cap or len(stderr) > cap:
        raise CommandFailed(f"output exceeded {cap} bytes")
    out = f"{stdout.decode(errors='replace')} {stderr.decode(errors='replace')}".strip()
    if proc.returncode != 0:
        raise CommandFailed(f"exit code {proc.returncode}: {out[:REPORT_CHARS]}")
    return out

def _truncate(text: str) -> str:
    return f"{text[:REPORT_CHARS]}..." if len(text) > REPORT_CHARS else text

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class GuardrailEngine:
    def __init__(
        self,
        store: StateStore,
        commands: Sequence[HealingCommand],
        max_actions_per_day: int = 5,
        enabled: bool = True,
        command_timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
        runner: Callable[[str, float], Awaitable[str]] = run_shell,
        audit=None,
    ):
        self.store = store
        self.commands = {c.id: c for c in commands}
        self.max_actions_per_day = max_actions_per_day
        self.enabled = enabled
        self.command_timeout = command_timeout
        self._clock = clock
        self._runner = runner
        self._audit = audit

    def list_commands(self) -> List[HealingCommand]:
        return list(self.commands.values())

    def _roll_quota(self, now: datetime) -> bool:
        quota = self.store.state.action_quota
        today = now.date().isoformat()
        if quota.date == today:
            return False
        quota.date, quota.count = today, 0
        return True

    def _cooldown_remaining(self, command: HealingCommand, now: datetime) -> Optional[float]:
        last = self.store.state.command_cooldowns.get(f"cmd:{command.id}")
        if not last:
            return None
        try:
            last_at = datetime.fromisoformat(last)
        except ValueError:
            return None
        if last_at.tzinfo is None:
            last_at = last_at.replace(tzinfo=timezone.utc)
        elapsed = (now - last_at).total_seconds() / 60
        if elapsed < command.cooldown_minutes:
            return command.cooldown_minutes - elapsed
        return None

    async def run(self, proposals: Iterable[Proposal]) -> List[GuardrailResult]:
        proposals = list(proposals)
        if not self.enabled or not proposals:
            return []

        results: List[GuardrailResult] = []
        dirty = False
        for i, p in enumerate(proposals):
            now = self._clock()
            dirty |= self._roll_quota(now)
            quota = self.store.state.action_quota

            if quota.count >= self.max_actions_per_day:
                left = len(proposals) - i
                results.append(GuardrailResult(
                    Outcome.SKIPPED_QUOTA,
                    f"Daily self-healing quota reached; {left} remaining action(s) not executed.",
                ))
                break

            command = self.commands.get(p.command_id)
            if command is None:
                results.append(GuardrailResult(Outcome.SKIPPED_UNKNOWN,
                                               f"Skipped unknown command id '{p.command_id}'.", p.command_id))
                continue

            remaining = self._cooldown_remaining(command, now)
            if remaining is not None:
                results.append(GuardrailResult(
                    Outcome.SKIPPED_COOLDOWN,
                    f"Skipped '{command.label}' due to cooldown ({math.ceil(remaining)} minute(s) remaining).",
                    command.id,
                ))
                continue

            try:
                output = await self._runner(command.command, self.command_timeout)
            except (CommandFailed, OSError) as e:
                log.warning("Self-healing command %s failed: %s", command.id, e)
                results.append(GuardrailResult(Outcome.FAILED, f"Command '{command.label}' failed: {e}", command.id))
                self._record(command, p, ok=False, detail=str(e))
                continue

            self.store.state.command_cooldowns[f"cmd:{command.id}"] = self._clock().isoformat()
            quota.count += 1
            await self.store.save()
            dirty = False
            log.info("Executed self-healing command %s (%s)", command.id, p.reason)
            results.append(GuardrailResult(
                Outcome.EXECUTED,
                f"Executed '{command.label}' ({p.reason}). Output: {_truncate(output) or 'No output.'}",
                command.id,
            ))
            self._record(command, p, ok=True, detail=_truncate(output))

        if dirty:
            await self.store.save()
        return results

    def _record(self, command: HealingCommand, p: Proposal, ok: bool, detail: str) -> None:
        if self._audit is None:
            return
        self._audit.record(actor=p.reason, action="run_command", target_type="command",
                           target_id=command.id, payload={"ok": ok, "detail": detail})
