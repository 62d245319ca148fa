"""HTTP surface tests against a fake bridge."""

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from hbcontrol.guardrail import CommandFailed, GuardrailEngine
from hbcontrol.host import HostController
from hbcontrol.main import create_app
from hbcontrol.services import build_services
from hbcontrol.settings import Settings

from conftest import MAIN, OFFICE, FakeBridge, accessory, make_registry, switch_service

FAN = "0E:2F:3A:4B:5C:6D:2:10"
LAMP = "0E:2F:3A:4B:5C:6D:3:10"

COMMANDS = [{"id": "restart", "label": "Restart Homebridge", "command": "systemctl restart homebridge",
             "cooldown_minutes": 60}]


def settings_for(tmp_path, **overrides) -> Settings:
    values = dict(
        HB_STORAGE_PATH=tmp_path,
        STATE_PATH=tmp_path / "state.json",
        DB_URL=f"sqlite:///{tmp_path / 'audit.db'}",
    )
    values.update(overrides)
    return Settings(**values)


def client_for(settings, bridges, runner=None):
    services = build_services(settings, registry=make_registry(bridges),
                              host=HostController(grace_seconds=0, terminate=Mock()))
    if runner is not None:
        services.guardrail = GuardrailEngine(services.store, settings.HEALING_COMMANDS,
                                             enabled=settings.SELF_HEALING_ENABLED, runner=runner,
                                             audit=services.audit)
    return TestClient(create_app(settings, services))


@pytest.fixture
def client(tmp_path, kitchen_bridge):
    with client_for(settings_for(tmp_path), {MAIN: kitchen_bridge}) as c:
        yield c


def test_status(client):
    body = client.get("/").json()
    assert body["status"] == "ok"
    assert body["entities"] == 3
    assert body["scheduled_jobs"] == 0
    assert body["last_refresh_at"]


def test_bridges_report_reachability(client):
    [bridge] = client.get("/api/v1/bridges").json()
    assert bridge == {"username": MAIN.username, "name": "Main", "port": 51826, "role": "main", "reachable": True}


class TestEntities:
    def test_list_and_filter(self, client):
        names = [e["name"] for e in client.get("/api/v1/entities").json()]
        assert names == ["Desk Lamp", "Kitchen Fan", "Porch - Heater"]
        lights = client.get("/api/v1/entities", params={"kind": "light"}).json()
        assert [e["id"] for e in lights] == [LAMP]
        assert lights[0]["state"] == {"on": True, "brightness": 40}
        assert [e["name"] for e in client.get("/api/v1/entities", params={"q": "porch"}).json()] == ["Porch - Heater"]

    def test_get_single(self, client):
        assert client.get(f"/api/v1/entities/{FAN}").json()["kind"] == "switch"
        assert client.get("/api/v1/entities/nope").status_code == 404

    def test_refresh(self, client):
        assert client.post("/api/v1/refresh").json()["entities"] == 3


class TestCommand:
    def test_switch_on(self, client, kitchen_bridge):
        r = client.post("/api/v1/command", json={"entity_id": FAN, "on": True})
        assert r.status_code == 200
        assert r.json()["state"]["on"] is True
        assert kitchen_bridge.writes == [{"aid": 2, "iid": 11, "value": True}]

    def test_unknown_entity_is_404(self, client):
        assert client.post("/api/v1/command", json={"entity_id": "nope", "on": True}).status_code == 404

    def test_brightness_on_switch_is_400(self, client):
        r = client.post("/api/v1/command", json={"entity_id": FAN, "brightness": 20})
        assert r.status_code == 400

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_brightness_is_400(self, client, kitchen_bridge, value):
        body = f'{{"entity_id": "{LAMP}", "brightness": {value}}}'
        r = client.post("/api/v1/command", content=body, headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        assert kitchen_bridge.writes == []

    def test_bridge_rejection_is_502(self, client, kitchen_bridge):
        kitchen_bridge.write_statuses = [-70402]
        r = client.post("/api/v1/command", json={"entity_id": FAN, "on": True})
        assert r.status_code == 502

    def test_writes_are_audited(self, client):
        client.post("/api/v1/command", json={"entity_id": FAN, "on": True, "actor": "tester"})
        [record] = client.get("/api/v1/audit").json()
        assert (record["actor"], record["target_id"]) == ("tester", FAN)
        assert record["payload"]["ok"] is True


class TestTargets:
    def test_group_word_hits_every_light(self, client, kitchen_bridge):
        r = client.post("/api/v1/targets/command", json={"targets": "lights", "on": False})
        assert r.json()["results"] == [{"entity_id": LAMP, "ok": True, "message": "Set Desk Lamp: OFF"}]

    def test_no_match_is_404(self, client):
        assert client.post("/api/v1/targets/command", json={"targets": "garage", "on": True}).status_code == 404

    def test_broad_query_is_refused_with_preview(self, tmp_path):
        lamps = FakeBridge([accessory(i, f"Lamp {i}", switch_service(10)) for i in range(2, 9)])
        with client_for(settings_for(tmp_path), {MAIN: lamps}) as c:
            r = c.post("/api/v1/targets/command", json={"targets": "lamp", "on": True})
        assert r.status_code == 409
        assert len(r.json()["detail"]["preview"]) == 5
        assert lamps.writes == []

    def test_one_failing_bridge_does_not_stop_others(self, tmp_path, kitchen_bridge):
        office = FakeBridge([accessory(2, "Office Fan", switch_service(10))])
        with client_for(settings_for(tmp_path), {MAIN: kitchen_bridge, OFFICE: office}) as c:
            office.write_statuses = [-70402]
            r = c.post("/api/v1/targets/command", json={"targets": "switches", "on": True})
        results = {x["entity_id"]: x["ok"] for x in r.json()["results"]}
        assert results == {FAN: True, "AA:BB:CC:DD:EE:FF:2:10": False}


class TestJobs:
    def test_schedule_list_and_cancel(self, client):
        r = client.post("/api/v1/jobs", json={"targets": "Kitchen Fan", "on": True, "delay": "10m"})
        assert r.status_code == 200
        [job] = r.json()
        assert job["action"] == {"type": "set_hb_entity", "entity_id": FAN, "on": True, "brightness": None}
        assert "set Kitchen Fan: ON" in job["description"]

        assert [j["id"] for j in client.get("/api/v1/jobs").json()] == [job["id"]]
        assert client.delete(f"/api/v1/jobs/{job['id']}").status_code == 200
        assert client.delete(f"/api/v1/jobs/{job['id']}").status_code == 404
        assert client.get("/api/v1/jobs").json() == []

    def test_past_run_at_is_rejected(self, client):
        r = client.post("/api/v1/jobs", json={"targets": FAN, "on": True, "run_at": "2020-01-01T00:00:00Z"})
        assert r.status_code == 400

    def test_missing_delay_is_rejected(self, client):
        assert client.post("/api/v1/jobs", json={"targets": FAN, "on": True}).status_code == 400
        assert client.post("/api/v1/jobs", json={"targets": FAN, "on": True, "delay": "later"}).status_code == 400

    def test_nothing_to_do_is_rejected(self, client):
        assert client.post("/api/v1/jobs", json={"targets": FAN, "delay": "5m"}).status_code == 400

    def test_brightness_requires_capable_targets(self, client):
        r = client.post("/api/v1/jobs", json={"targets": "all", "brightness": 30, "delay": "5m"})
        assert r.status_code == 400
        assert client.get("/api/v1/jobs").json() == []

    def test_non_finite_brightness_is_never_scheduled(self, client):
        body = '{"targets": "lights", "brightness": Infinity, "delay": "1h"}'
        r = client.post("/api/v1/jobs", content=body, headers={"Content-Type": "application/json"})
        assert r.status_code == 400
        jobs = client.get("/api/v1/jobs")
        assert jobs.status_code == 200
        assert jobs.json() == []

    def test_half_brightness_rounds_up_in_description(self, client):
        [job] = client.post("/api/v1/jobs", json={"targets": "lights", "brightness": 50.5, "delay": "1h"}).json()
        assert job["description"].endswith("set Desk Lamp: UNCHANGED | 51%")

    def test_restart_job_and_clear(self, client):
        r = client.post("/api/v1/jobs/restart", json={"reason": "nightly", "delay": "1h"})
        assert r.json()["action"] == {"type": "restart_homebridge", "reason": "nightly"}
        assert "restart Homebridge (nightly)" in r.json()["description"]
        assert client.delete("/api/v1/jobs").json() == {"cleared": 1}


class TestCommands:
    def test_disabled_self_healing_is_409(self, client):
        assert client.get("/api/v1/commands").json()["enabled"] is False
        r = client.post("/api/v1/commands/run", json={"command_id": "restart"})
        assert r.status_code == 409

    def test_run_and_cooldown(self, tmp_path, kitchen_bridge):
        calls = []

        async def runner(command, timeout):
            calls.append(command)
            return "restarted"

        settings = settings_for(tmp_path, SELF_HEALING_ENABLED=True, HEALING_COMMANDS=COMMANDS)
        with client_for(settings, {MAIN: kitchen_bridge}, runner) as c:
            assert [x["id"] for x in c.get("/api/v1/commands").json()["commands"]] == ["restart"]
            first = c.post("/api/v1/commands/run", json={"command_id": "restart"}).json()
            second = c.post("/api/v1/remediate", json={"proposals": [
                {"command_id": "restart"}, {"command_id": "ghost"},
            ]}).json()

        assert first["results"][0]["outcome"] == "executed"
        assert first["text"] == "- Executed 'Restart Homebridge' (manual-run). Output: restarted"
        assert [x["outcome"] for x in second["results"]] == ["skipped_cooldown", "skipped_unknown"]
        assert calls == ["systemctl restart homebridge"]

    def test_failed_command_is_reported(self, tmp_path, kitchen_bridge):
        async def runner(command, timeout):
            raise CommandFailed("exit code 1: nope")

        settings = settings_for(tmp_path, SELF_HEALING_ENABLED=True, HEALING_COMMANDS=COMMANDS)
        with client_for(settings, {MAIN: kitchen_bridge}, runner) as c:
            body = c.post("/api/v1/commands/run", json={"command_id": "restart"}).json()
            audit = c.get("/api/v1/audit").json()
        assert body["results"][0]["outcome"] == "failed"
        assert audit[0]["action"] == "run_command"
        assert audit[0]["payload"]["ok"] is False
