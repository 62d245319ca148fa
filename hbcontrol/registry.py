import asyncio, logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from .discovery import Endpoint, discover_endpoints
from .errors import EndpointUnreachable, EntityNotFound, InvalidValue, ProtocolError, UnsupportedCapability
from .hap_client import HapClient, HapWrite
from .mappings import (
    CHAR_BRIGHTNESS, CHAR_NAME, CHAR_ON, GROUP_KINDS, KIND_SERVICES, PERM_PAIRED_WRITE,
    SERVICE_ACCESSORY_INFORMATION, as_bool, as_number, as_string, clamp_brightness, normalize_type,
)
from .realtime import Broadcaster

log = logging.getLogger("registry")

EntityKind = Literal["switch", "light", "outlet"]

@dataclass
class BridgeRef:
    username: str
    name: str
    port: int

@dataclass
class HapAddress:
    aid: int
    service_iid: int
    on_iid: int
    brightness_iid: Optional[int] = None

@dataclass
class EntityState:
    on: bool
    brightness: Optional[int] = None

@dataclass
class Entity:
    id: str
    name: str
    kind: EntityKind
    bridge: BridgeRef
    hap: HapAddress
    state: EntityState = field(default_factory=lambda: EntityState(on=False))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

def _find_char(service: Dict[str, Any], char_type: str) -> Optional[Dict[str, Any]]:
    for c in service.get("characteristics") or []:
        if isinstance(c, dict) and normalize_type(c.get("type")) == char_type:
            return c
    return None

def _accessory_name(services: List[Dict[str, Any]]) -> Optional[str]:
    for svc in services:
        if normalize_type(svc.get("type")) == SERVICE_ACCESSORY_INFORMATION:
            name_char = _find_char(svc, CHAR_NAME)
            return as_string(name_char.get("value")) if name_char else None
    return None

def _build_entity(endpoint: Endpoint, aid: int, accessory_name: str, kind: EntityKind,
                  service: Dict[str, Any]) -> Optional[Entity]:
    on_char = _find_char(service, CHAR_ON)
    if on_char is None or not isinstance(on_char.get("iid"), int):
        return None
    perms = on_char.get("perms")
    if not isinstance(perms, list) or PERM_PAIRED_WRITE not in perms:
        return None

    name_char = _find_char(service, CHAR_NAME)
    service_name = as_string(name_char.get("value")) if name_char else None
    name = f"{accessory_name} - {service_name}" if service_name and service_name != accessory_name else accessory_name

    brightness_char = _find_char(service, CHAR_BRIGHTNESS) if kind == "light" else None
    if brightness_char is not None and not isinstance(brightness_char.get("iid"), int):
        brightness_char = None
    brightness = None
    if brightness_char is not None:
        raw = as_number(brightness_char.get("value"))
        brightness = clamp_brightness(raw) if raw is not None else None

    return Entity(
        id=f"{endpoint.username}:{aid}:{service['iid']}",
        name=name,
        kind=kind,
        bridge=BridgeRef(endpoint.username, endpoint.name, endpoint.port),
        hap=HapAddress(aid, service["iid"], on_char["iid"],
                       brightness_char["iid"] if brightness_char is not None else None),
        state=EntityState(on=as_bool(on_char.get("value")), brightness=brightness),
    )

def build_entities(endpoint: Endpoint, graph: Dict[str, Any]) -> List[Entity]:
    """Turn one bridge's /accessories graph into controllable entities."""
    results: List[Entity] = []
    for accessory in graph.get("accessories") or []:
        if not isinstance(accessory, dict) or not isinstance(accessory.get("aid"), int):
            continue
        aid = accessory["aid"]
        services = [s for s in accessory.get("services") or [] if isinstance(s, dict) and isinstance(s.get("iid"), int)]
        accessory_name = _accessory_name(services) or f"Accessory {aid}"
        for kind, service_type in KIND_SERVICES.items():
            for svc in services:
                if normalize_type(svc.get("type")) != service_type:
                    continue
                entity = _build_entity(endpoint, aid, accessory_name, kind, svc)
                if entity:
                    results.append(entity)
    return results

def disambiguate_names(entities: List[Entity]) -> None:
    by_name: Dict[str, List[Entity]] = defaultdict(list)
    for e in entities:
        by_name[e.name].append(e)
    for name, items in by_name.items():
        if len(items) <= 1:
            continue
        for e in items:
            e.name = f"{name} ({e.bridge.name})"

def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

class EntityRegistry:
    def __init__(
        self,
        storage_path: Path,
        include_child_bridges: bool = True,
        hap_host: str = "127.0.0.1",
        hap_timeout: float = 8.0,
        refresh_interval: float = 60,
        broadcaster: Optional[Broadcaster] = None,
        discover: Optional[Callable[[], List[Endpoint]]] = None,
        client_factory: Optional[Callable[[Endpoint], HapClient]] = None,
    ):
        self._discover = discover or (lambda: discover_endpoints(storage_path, include_child_bridges))
        self._client_factory = client_factory or (
            lambda ep: HapClient(ep.base_url(hap_host), ep.pin, timeout=hap_timeout)
        )
        self.refresh_interval = refresh_interval
        self.broadcaster = broadcaster
        self.endpoints: List[Endpoint] = []
        self.last_refresh_at: Optional[str] = None
        self._clients: Dict[str, HapClient] = {}
        self._entities: Dict[str, Entity] = {}
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh("interval")
            except Exception as e:
                log.warning("Periodic refresh failed: %s", e)

    def client_for(self, username: str) -> Optional[HapClient]:
        return self._clients.get(username)

    async def refresh(self, reason: str) -> int:
        endpoints = await asyncio.to_thread(self._discover)
        clients = {ep.username: self._client_factory(ep) for ep in endpoints}

        batch: List[Entity] = []
        for ep in endpoints:
            try:
                graph = await clients[ep.username].fetch_graph()
            except (EndpointUnreachable, ProtocolError) as e:
                log.warning("Failed to refresh accessories from bridge %s (%s): %s", ep.username, ep.port, e)
                continue
            batch.extend(build_entities(ep, graph))
        disambiguate_names(batch)

        # swap in one step so readers never see a partial map
        self.endpoints, self._clients = endpoints, clients
        self._entities = {e.id: e for e in batch}
        self.last_refresh_at = _utcnow_iso()
        log.debug("Refreshed %d controllable entities (%s)", len(self._entities), reason)
        if self.broadcaster:
            self.broadcaster.publish("refresh", {"reason": reason, "entities": len(self._entities),
                                                 "at": self.last_refresh_at})
        return len(self._entities)

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def list_entities(self, query: Optional[str] = None, kind: Optional[str] = None) -> List[Entity]:
        items = sorted(self._entities.values(), key=lambda e: e.name.lower())
        if kind:
            items = [e for e in items if e.kind == kind]
        needle = (query or "").strip().lower()
        if not needle:
            return items
        return [e for e in items if needle in e.name.lower() or needle in e.id.lower()]

    def resolve_targets(self, query: str) -> List[Entity]:
        """Group word, exact id, or substring query -> entities."""
        q = query.strip().lower()
        if q in GROUP_KINDS:
            return self.list_entities(kind=GROUP_KINDS[q])
        exact = self.get_entity(query.strip())
        if exact:
            return [exact]
        return self.list_entities(query)

    async def set_entity(self, entity_id: str, on: Optional[bool] = None,
                         brightness: Optional[float] = None) -> Entity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise EntityNotFound(entity_id)

        writes: List[HapWrite] = []
        if on is not None:
            writes.append({"aid": entity.hap.aid, "iid": entity.hap.on_iid, "value": bool(on)})
        level = None
        if brightness is not None:
            if entity.kind != "light" or entity.hap.brightness_iid is None:
                raise UnsupportedCapability(f"Brightness not supported for {entity.name}")
            try:
                level = clamp_brightness(brightness)
            except ValueError as e:
                raise InvalidValue(f"Invalid brightness for {entity.name}: {e}") from e
            writes.append({"aid": entity.hap.aid, "iid": entity.hap.brightness_iid, "value": level})
        if not writes:
            return entity

        client = self._clients.get(entity.bridge.username)
        if client is None:
            raise EndpointUnreachable(entity.bridge.username, "bridge client not available")
        await client.write_characteristics(writes)

        # optimistic; the next refresh reconciles
        if on is not None:
            entity.state.on = bool(on)
        if level is not None:
            entity.state.brightness = level
        if self.broadcaster:
            self.broadcaster.publish("entity", entity.to_dict())
        return entity
