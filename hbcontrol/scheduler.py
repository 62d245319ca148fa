"""Durable one-shot job scheduler.

Jobs live in the state file, so a restart re-arms everything still in the
future. A job whose ``run_at`` passed while the process was down (or that
cannot be parsed) is pruned on the next ``sync()`` and never runs.

Each armed job is an asyncio task that sleeps in chunks of at most
``max_chunk`` seconds and re-checks the remaining time after every chunk, so
delays of months are handled the same way as delays of seconds.
"""
import asyncio, logging, uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .errors import SchedulingError
from .realtime import Broadcaster
from .store import JobAction, ScheduledAction, StateStore

log = logging.getLogger("scheduler")

MAX_TIMER_CHUNK = timedelta(days=23).total_seconds()

JobExecutor = Callable[[ScheduledAction], Awaitable[None]]

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

def parse_run_at(value: object) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

class JobScheduler:
    def __init__(self, store: StateStore, executor: JobExecutor,
                 broadcaster: Optional[Broadcaster] = None, max_chunk: float = MAX_TIMER_CHUNK):
        self.store = store
        self._executor = executor
        self.broadcaster = broadcaster
        self.max_chunk = max_chunk
        self._timers: Dict[str, asyncio.Task] = {}
        self._running: Dict[str, asyncio.Task] = {}

    @property
    def _jobs(self) -> List[ScheduledAction]:
        return self.store.state.one_shot_jobs

    def list_scheduled(self) -> List[ScheduledAction]:
        far = datetime.max.replace(tzinfo=timezone.utc)
        return sorted(self._jobs, key=lambda j: parse_run_at(j.run_at) or far)

    def get(self, job_id: str) -> Optional[ScheduledAction]:
        return next((j for j in self._jobs if j.id == job_id), None)

    async def schedule(self, run_at: datetime, actions: Iterable[JobAction]) -> List[ScheduledAction]:
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=timezone.utc)
        created_at = _utcnow().isoformat()
        jobs = [
            ScheduledAction(id=str(uuid.uuid4()), created_at=created_at, run_at=run_at.isoformat(), action=a)
            for a in actions
        ]
        if not jobs:
            return []
        self.store.state.one_shot_jobs = self._jobs + jobs
        await self.store.save()
        await self.sync()
        return jobs

    async def schedule_one(self, run_at: datetime, action: JobAction) -> ScheduledAction:
        return (await self.schedule(run_at, [action]))[0]

    async def cancel(self, job_id: str) -> bool:
        remaining = [j for j in self._jobs if j.id != job_id]
        if len(remaining) == len(self._jobs):
            return False
        self.store.state.one_shot_jobs = remaining
        await self.store.save()
        await self.sync()
        return True

    async def clear(self) -> int:
        count = len(self._jobs)
        self.store.state.one_shot_jobs = []
        await self.store.save()
        await self.sync()
        return count

    async def sync(self) -> None:
        now = _utcnow()
        jobs = self._jobs
        upcoming = [j for j in jobs if (parse_run_at(j.run_at) or now) > now]
        if len(upcoming) != len(jobs):
            log.info("Pruned %d expired or invalid job(s)", len(jobs) - len(upcoming))
            self.store.state.one_shot_jobs = upcoming
            await self.store.save()

        wanted = {j.id for j in upcoming}
        for job_id in [i for i in self._timers if i not in wanted]:
            self._timers.pop(job_id).cancel()

        for job in upcoming:
            if job.id in self._timers or job.id in self._running:
                continue
            run_at = parse_run_at(job.run_at)
            self._timers[job.id] = asyncio.create_task(self._arm(job, run_at), name=f"job-{job.id}")

    async def stop(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for t in timers:
            t.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    async def _arm(self, job: ScheduledAction, run_at: datetime) -> None:
        while True:
            remaining = (run_at - _utcnow()).total_seconds()
            if remaining <= 0:
                break
            await asyncio.sleep(min(remaining, self.max_chunk))
        # detach from the timer map so a sync() during the write cannot cancel it
        task = self._timers.pop(job.id, None)
        if task is not None:
            self._running[job.id] = task
        await self._run(job)

    async def _run(self, job: ScheduledAction) -> None:
        error: Optional[SchedulingError] = None
        try:
            await self._executor(job)
            log.info("Job %s (%s) executed", job.id, job.action.type)
        except Exception as e:
            error = SchedulingError(job.id, e)
            log.warning("%s", error)
        finally:
            self._running.pop(job.id, None)
            self.store.state.one_shot_jobs = [j for j in self._jobs if j.id != job.id]
            try:
                await self.store.save()
            except OSError as e:
                log.error("Failed to persist removal of job %s: %s", job.id, e)
        if self.broadcaster:
            self.broadcaster.publish("job", {"id": job.id, "type": job.action.type, "ok": error is None,
                                             "error": str(error.cause) if error else None})
