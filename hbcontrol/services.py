"""Composition root: builds every component once and wires them together."""
import asyncio, logging
from dataclasses import dataclass
from typing import Optional

from .audit import AuditLog
from .db import make_session_factory
from .guardrail import GuardrailEngine
from .host import HostController
from .realtime import Broadcaster
from .registry import EntityRegistry
from .scheduler import JobScheduler
from .settings import Settings
from .store import ScheduledAction, StateStore

log = logging.getLogger("startup")

@dataclass
class Services:
    settings: Settings
    broadcaster: Broadcaster
    store: StateStore
    audit: AuditLog
    registry: EntityRegistry
    host: HostController
    scheduler: JobScheduler
    guardrail: GuardrailEngine

    async def execute_job(self, job: ScheduledAction) -> None:
        action = job.action
        payload = {**action.model_dump(), "job_id": job.id}
        if action.type == "restart_homebridge":
            # recorded up front: a successful restart never returns
            self.audit.record("scheduler", action.type, "host", "homebridge", payload)
            await self.host.restart(action.reason)
            return
        try:
            await self.registry.set_entity(action.entity_id, on=action.on, brightness=action.brightness)
        except Exception as e:
            self.audit.record("scheduler", action.type, "entity", action.entity_id,
                              {**payload, "ok": False, "error": str(e)})
            raise
        self.audit.record("scheduler", action.type, "entity", action.entity_id, {**payload, "ok": True})

    async def start(self) -> None:
        await asyncio.to_thread(self.audit.init_db)
        await self.store.load()
        if self.settings.CONTROL_ENABLED:
            try:
                await self.registry.refresh("startup")
            except Exception as e:
                log.warning("Initial refresh failed: %s", e)
            self.registry.start()
        await self.scheduler.sync()
        log.info("Started: %d entities, %d scheduled job(s)",
                 len(self.registry.list_entities()), len(self.scheduler.list_scheduled()))

    async def stop(self) -> None:
        await self.registry.stop()
        await self.scheduler.stop()

def build_services(settings: Settings, registry: Optional[EntityRegistry] = None,
                   host: Optional[HostController] = None) -> Services:
    broadcaster = Broadcaster()
    store = StateStore(settings.state_file)
    audit = AuditLog(make_session_factory(settings.DB_URL))
    registry = registry or EntityRegistry(
        settings.HB_STORAGE_PATH,
        include_child_bridges=settings.INCLUDE_CHILD_BRIDGES,
        hap_host=settings.HAP_HOST,
        hap_timeout=settings.HAP_TIMEOUT_SECONDS,
        refresh_interval=settings.REFRESH_INTERVAL_SECONDS,
    )
    if registry.broadcaster is None:
        registry.broadcaster = broadcaster
    host = host or HostController(broadcaster, grace_seconds=settings.RESTART_GRACE_SECONDS)
    guardrail = GuardrailEngine(
        store,
        settings.HEALING_COMMANDS,
        max_actions_per_day=settings.MAX_ACTIONS_PER_DAY,
        enabled=settings.SELF_HEALING_ENABLED,
        command_timeout=settings.COMMAND_TIMEOUT_SECONDS,
        audit=audit,
    )
    services = Services(settings, broadcaster, store, audit, registry, host, None, guardrail)
    services.scheduler = JobScheduler(store, services.execute_job, broadcaster)
    return services
