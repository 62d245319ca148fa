"""Shared fixtures: HAP accessory graph builders and an in-memory fake bridge."""

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from hbcontrol.discovery import Endpoint
from hbcontrol.hap_client import HapClient
from hbcontrol.mappings import hap_uuid
from hbcontrol.registry import EntityRegistry


def char(short: str, iid: int, value: Any = None, perms=("pr", "pw", "ev")) -> Dict[str, Any]:
    return {"iid": iid, "type": hap_uuid(short), "perms": list(perms), "value": value}


def info_service(name: str) -> Dict[str, Any]:
    return {"iid": 1, "type": hap_uuid("3E"), "characteristics": [char("23", 2, name, perms=("pr",))]}


def switch_service(iid: int, on: bool = False, name: Optional[str] = None, writable: bool = True):
    chars = [char("25", iid + 1, on, perms=("pr", "pw") if writable else ("pr",))]
    if name:
        chars.append(char("23", iid + 2, name, perms=("pr",)))
    return {"iid": iid, "type": hap_uuid("49"), "characteristics": chars}


def outlet_service(iid: int, on: bool = False, name: Optional[str] = None):
    svc = switch_service(iid, on, name)
    svc["type"] = hap_uuid("47")
    return svc


def light_service(iid: int, on: bool = False, brightness: Optional[int] = None, name: Optional[str] = None):
    svc = switch_service(iid, on, name)
    svc["type"] = hap_uuid("43")
    if brightness is not None:
        svc["characteristics"].append(char("8", iid + 3, brightness))
    return svc


def accessory(aid: int, name: str, *services) -> Dict[str, Any]:
    return {"aid": aid, "services": [info_service(name), *services]}


class FakeBridge:
    """Minimal HAP server: serves a graph, records writes, applies them to the graph."""

    def __init__(self, accessories: List[Dict[str, Any]], pin: str = "031-45-154"):
        self.graph = {"accessories": accessories}
        self.pin = pin
        self.writes: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.fail_reads = False
        self.write_statuses: Optional[List[int]] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path == "/accessories":
            if self.fail_reads:
                return httpx.Response(500, text="bridge down")
            return httpx.Response(200, json=self.graph)
        if request.method == "PUT" and request.url.path == "/characteristics":
            if request.headers.get("Authorization") != self.pin:
                return httpx.Response(470, json={"status": -70401})
            body = json.loads(request.content)
            writes = body["characteristics"]
            self.writes.extend(writes)
            if self.write_statuses is not None:
                entries = [
                    {"aid": w["aid"], "iid": w["iid"], "status": s}
                    for w, s in zip(writes, self.write_statuses)
                ]
                return httpx.Response(207, json={"characteristics": entries})
            self._apply(writes)
            return httpx.Response(204)
        return httpx.Response(404)

    def _apply(self, writes):
        for w in writes:
            for acc in self.graph["accessories"]:
                if acc["aid"] != w["aid"]:
                    continue
                for svc in acc["services"]:
                    for c in svc["characteristics"]:
                        if c["iid"] == w["iid"]:
                            c["value"] = w["value"]

    def client(self, base_url: str = "http://127.0.0.1:51826") -> HapClient:
        transport = httpx.MockTransport(self.handler)
        return HapClient(base_url, self.pin, http_client=httpx.AsyncClient(transport=transport))


MAIN = Endpoint("0E:2F:3A:4B:5C:6D", 51826, "031-45-154", "Main", "main")
OFFICE = Endpoint("AA:BB:CC:DD:EE:FF", 51900, "031-45-154", "Office", "child")


def make_registry(bridges: Dict[Endpoint, FakeBridge], **kwargs) -> EntityRegistry:
    by_username = {ep.username: fake for ep, fake in bridges.items()}
    return EntityRegistry(
        storage_path="/nonexistent",
        discover=lambda: list(bridges),
        client_factory=lambda ep: by_username[ep.username].client(ep.base_url()),
        **kwargs,
    )


@pytest.fixture
def kitchen_bridge() -> FakeBridge:
    return FakeBridge([
        accessory(2, "Kitchen Fan", switch_service(10, on=False)),
        accessory(3, "Desk Lamp", light_service(10, on=True, brightness=40)),
        accessory(4, "Porch", outlet_service(10, on=False, name="Heater")),
    ])
