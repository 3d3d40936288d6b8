import asyncio

import pytest  # type: ignore[import-not-found]
from aiohttp import web
from aiohttp import test_utils

from core.adapters.bark_adapter import BarkNotifier, build_push_url
from core.session import Session
from core.vendor import ErrorKind, VendorClient, VendorError
from tests.conftest import ADDRESS, FakeVendorClient, make_config


def test_build_push_url_escapes_key_and_text():
    url = build_push_url("https://api.day.app/", "key/1", "order placed, order number: 42")
    assert url == "https://api.day.app/key%2F1/order%20placed%2C%20order%20number%3A%2042"


def test_empty_device_key_is_rejected():
    notifier = BarkNotifier(base_url="http://127.0.0.1:1")
    with pytest.raises(VendorError) as exc:
        asyncio.run(notifier.push("", "hello"))
    assert exc.value.kind is ErrorKind.OTHER


def _run_with_bark(status, call):
    """Start a local Bark stand-in answering `status`, run `call(base_url)`."""
    received = []

    async def handler(request):
        received.append((request.match_info["key"], request.match_info["text"]))
        return web.Response(status=status, text="{}")

    async def _run():
        app = web.Application()
        app.router.add_get("/{key}/{text}", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            return await call(str(server.make_url("/")).rstrip("/"))
        finally:
            await server.close()

    return asyncio.run(_run()), received


def test_push_delivers_text():
    async def call(base_url):
        notifier = BarkNotifier(base_url=base_url)
        try:
            await notifier.push("device-1", "order placed, order number: 42")
        finally:
            await notifier.close()

    _, received = _run_with_bark(200, call)
    assert received == [("device-1", "order placed, order number: 42")]


def test_push_non_200_raises():
    async def call(base_url):
        notifier = BarkNotifier(base_url=base_url)
        try:
            await notifier.push("device-1", "hi")
        except VendorError as e:
            return e
        finally:
            await notifier.close()

    error, _ = _run_with_bark(500, call)
    assert isinstance(error, VendorError)
    assert "HTTP 500" in error.message


def test_vendor_client_default_push_uses_bark(monkeypatch):
    class PushingClient(FakeVendorClient):
        # Base-class push and close instead of the scripted ones.
        push_notification = VendorClient.push_notification
        close = VendorClient.close

    async def call(base_url):
        monkeypatch.setenv("BARK_BASE_URL", base_url)
        client = PushingClient()
        session = Session(config=make_config(push_id="device-9"), address=ADDRESS)
        try:
            await client.push_notification(session, "done")
        finally:
            await client.close()

    _, received = _run_with_bark(200, call)
    assert received == [("device-9", "done")]
