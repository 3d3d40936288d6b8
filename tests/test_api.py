import asyncio
import time

import pytest  # type: ignore[import-not-found]
from fastapi.testclient import TestClient

from api.server import create_app
from core.broadcast import BroadcastHub
from core.run_control import AcquisitionController
from core.vendor import ErrorKind
from tests.conftest import FakeVendorClient, vendor_error


CONFIG_BODY = {
    "authToken": "token-abc",
    "barkId": "device-1",
    "floorId": 1,
    "deliveryType": 2,
    "promotionId": "p1, p2,,",
    "deliveryFee": True,
    "isSelected": True,
}


async def fast_sleep(delay):
    await asyncio.sleep(min(delay, 0.01))


@pytest.fixture
def stalled_vendor():
    # Never gets past the first stage, so a started run stays active.
    return FakeVendorClient({"save_delivery_address": [vendor_error(ErrorKind.OTHER, "busy")]})


@pytest.fixture
def surface(stalled_vendor):
    configs = []

    def factory(config):
        configs.append(config)
        return stalled_vendor

    controller = AcquisitionController(BroadcastHub(), factory, sleep=fast_sleep)
    with TestClient(create_app(controller)) as http:
        yield http, controller, configs


def wait_until_idle(http, attempts=200):
    for _ in range(attempts):
        if not http.get("/health").json()["running"]:
            return True
        time.sleep(0.01)
    return False


def test_health(surface):
    http, _, _ = surface
    assert http.get("/health").json() == {"status": "ok", "running": False}


def test_status_before_configure(surface):
    http, _, _ = surface
    body = http.get("/api/status").json()
    assert body["success"] is True
    assert body["data"] == {"step": "idle", "status": "stopped"}


def test_config_rejects_empty_token(surface):
    http, _, configs = surface
    resp = http.post("/api/config", json={"authToken": ""})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "auth token must not be empty"}
    assert configs == []


def test_config_maps_fields_and_returns_addresses(surface):
    http, _, configs = surface
    resp = http.post("/api/config", json=CONFIG_BODY)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["selectedAddress"]["addressId"] == "addr-1"
    assert [a["addressId"] for a in body["data"]["addressList"]] == ["addr-1"]

    (config,) = configs
    assert config.promotion_ids == ("p1", "p2")
    assert config.push_id == "device-1"
    assert config.require_free_delivery is True
    assert config.only_selected is True


def test_start_before_configure(surface):
    http, _, _ = surface
    resp = http.post("/api/start")
    assert resp.status_code == 400
    assert resp.json()["message"] == "not configured"


def test_start_twice_then_stop(surface):
    http, controller, _ = surface
    http.post("/api/config", json=CONFIG_BODY)

    assert http.post("/api/start").json() == {"success": True, "message": "started"}
    again = http.post("/api/start")
    assert again.status_code == 400
    assert again.json()["message"] == "already running"
    assert http.get("/health").json()["running"] is True

    assert http.post("/api/stop").json() == {"success": True, "message": "stopped"}
    assert wait_until_idle(http)
    assert http.get("/api/status").json()["data"]["status"] == "stopped"


def test_stop_without_run_succeeds(surface):
    http, _, _ = surface
    assert http.post("/api/stop").status_code == 200


def test_websocket_sends_snapshot_first(surface):
    http, _, _ = surface
    http.post("/api/config", json=CONFIG_BODY)
    with http.websocket_connect("/ws") as ws:
        first = ws.receive_json()
    assert first["step"] == "configured"
    assert first["address"]["addressId"] == "addr-1"
