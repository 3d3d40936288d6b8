import asyncio
import re

from core.broadcast import HEARTBEAT, BroadcastHub, LogLevel, RunState, StatusUpdate
from core.session import Order
from tests.conftest import ADDRESS, make_goods


def test_log_entry_shape():
    hub = BroadcastHub()
    entry = hub.log(LogLevel.SUCCESS, "Configuration saved")
    data = entry.to_dict()
    assert data["level"] == "success"
    assert data["message"] == "Configuration saved"
    assert re.fullmatch(r"\d{2}:\d{2}:\d{2}", data["time"])


def test_history_drops_newest_when_full():
    hub = BroadcastHub(history_size=3)
    for i in range(5):
        hub.log(LogLevel.INFO, f"line {i}")
    assert [e.message for e in hub.recent_logs()] == ["line 0", "line 1", "line 2"]
    assert hub.dropped_history == 2


def test_drain_empties_history():
    hub = BroadcastHub()
    hub.log(LogLevel.INFO, "one")
    assert len(hub.recent_logs(drain=True)) == 1
    assert hub.recent_logs() == []


def test_status_dict_omits_empty_fields():
    update = StatusUpdate(step="checking_cart", status=RunState.RUNNING)
    assert update.to_dict() == {"step": "checking_cart", "status": "running"}

    full = StatusUpdate(
        step="order_success",
        status=RunState.SUCCESS,
        address=ADDRESS,
        goods=[make_goods("a", 1.0, 2)],
        delivery_fee="0",
        order=Order(is_success=True, order_no="N-1"),
    )
    data = full.to_dict()
    assert data["address"]["addressId"] == "addr-1"
    assert data["goodsList"][0]["quantity"] == 2
    assert data["deliveryFee"] == "0"
    assert data["order"] == {"isSuccess": True, "orderNo": "N-1", "payAmount": "", "channel": ""}
    assert "timeSlots" not in data


def test_observer_receives_messages_in_order():
    async def _run():
        hub = BroadcastHub()
        stream = hub.subscribe()
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        hub.log(LogLevel.INFO, "a")
        hub.publish_status(StatusUpdate(step="checking_cart", status=RunState.RUNNING))
        received = [await first, await stream.__anext__()]
        await stream.aclose()
        return hub, received

    hub, received = asyncio.run(_run())
    assert received[0]["message"] == "a"
    assert received[1]["step"] == "checking_cart"
    assert hub.observer_count == 0


def test_full_inbox_drops_oldest():
    async def _run():
        hub = BroadcastHub(inbox_size=2)
        stream = hub.subscribe()
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        hub.log(LogLevel.INFO, "m0")
        got = await first
        for i in range(1, 5):
            hub.log(LogLevel.INFO, f"m{i}")
        rest = [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        return hub, got, rest

    hub, got, rest = asyncio.run(_run())
    assert got["message"] == "m0"
    assert [m["message"] for m in rest] == ["m3", "m4"]
    assert hub.dropped_inbox == 2


def test_slow_observer_does_not_block_others():
    async def _run():
        hub = BroadcastHub(inbox_size=1)
        slow = hub.subscribe()
        fast = hub.subscribe()
        slow_first = asyncio.ensure_future(slow.__anext__())
        fast_first = asyncio.ensure_future(fast.__anext__())
        await asyncio.sleep(0)
        assert hub.observer_count == 2
        hub.log(LogLevel.INFO, "x")
        hub.log(LogLevel.INFO, "y")
        result = (await fast_first, await slow_first)
        await slow.aclose()
        await fast.aclose()
        return result

    fast_msg, slow_msg = asyncio.run(_run())
    assert fast_msg["message"] in ("x", "y")
    assert slow_msg["message"] in ("x", "y")


def test_initial_snapshot_comes_first():
    async def _run():
        hub = BroadcastHub()
        stream = hub.subscribe(initial={"step": "idle", "status": "stopped"})
        first = await stream.__anext__()
        await stream.aclose()
        return first

    assert asyncio.run(_run()) == {"step": "idle", "status": "stopped"}


def test_heartbeat_after_silence():
    async def _run():
        hub = BroadcastHub(heartbeat_interval=0.01)
        stream = hub.subscribe()
        message = await stream.__anext__()
        await stream.aclose()
        return message

    message = asyncio.run(_run())
    assert message == HEARTBEAT
    assert message is not HEARTBEAT


def test_publish_without_observers_only_updates_state():
    hub = BroadcastHub()
    hub.publish_status(StatusUpdate(step="configured", status=RunState.STOPPED))
    assert hub.last_status.step == "configured"
    assert hub.observer_count == 0
