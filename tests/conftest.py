import asyncio

import pytest  # type: ignore[import-not-found]

from core.broadcast import BroadcastHub
from core.run_control import RunContext, RunFlag
from core.session import (
    Address,
    Capacity,
    CapacityDay,
    CapacityWindow,
    Cart,
    CartItem,
    Config,
    FloorInfo,
    Goods,
    Order,
    Session,
    SettleDelivery,
    SettleInfo,
    Store,
)
from core.vendor import VendorClient, VendorError


# ---------- builders ----------
def make_item(spu_id="spu-1", quantity=1, stock=10, limit=0, residue=0, weight=1.0,
              selected=True, in_stock=True, on_sale=True, available=True):
    return CartItem(
        spu_id=spu_id,
        goods_name=f"goods {spu_id}",
        store_id="store-1",
        price=100,
        quantity=quantity,
        stock_quantity=stock,
        stock_status=in_stock,
        is_put_on_sale=on_sale,
        is_available=available,
        limit_num=limit,
        residue_purchase_num=residue,
        is_selected=selected,
        weight=weight,
    )


def make_goods(spu_id, weight, quantity):
    return Goods(spu_id=spu_id, goods_name=spu_id, weight=weight, quantity=quantity)


def make_cart(*items, floor_id=1, delivery_type=2, store_id="store-1"):
    return Cart(floors=[FloorInfo(
        floor_id=floor_id,
        delivery_type=delivery_type,
        store_id=store_id,
        normal_goods=list(items),
    )])


def make_window(start, end, full=False, disabled=False):
    return CapacityWindow(
        start_time=start,
        end_time=end,
        start_real_time=f"{start}-real",
        end_real_time=f"{end}-real",
        full=full,
        disabled=disabled,
    )


def make_capacity(*windows, date="2024-01-15"):
    return Capacity(days=[CapacityDay(str_date=date, windows=list(windows))])


def make_config(**overrides):
    values = {"auth_token": "token-abc"}
    values.update(overrides)
    return Config(**values)


def make_store(store_id="store-1", template="tpl-1", block="blk-1"):
    return Store(store_id=store_id, store_name=f"Store {store_id}",
                 delivery_template_id=template, area_block_id=block)


def make_settle(fee="0", template="tpl-1", block="blk-1"):
    return SettleInfo(delivery_fee=fee, floor_id=1, settle_delivery=SettleDelivery(
        delivery_type=2, delivery_template_id=template, area_block_id=block))


ADDRESS = Address(address_id="addr-1", name="Tester", district_name="Pudong",
                  receiver_address="Century Ave", detail_address="No. 100")


# ---------- fakes ----------
class FakeVendorClient(VendorClient):
    """
    Scripted vendor. Each method name maps to a list of responses consumed
    in order; the last one repeats. A response that is an Exception is
    raised, a callable is invoked (with the call args) and its result used.
    """

    def __init__(self, script=None):
        self.script = {
            "init_session": [ADDRESS],
            "get_address": [[ADDRESS]],
            "save_delivery_address": [None],
            "check_store": [[make_store()]],
            "check_cart": [make_cart(make_item())],
            "check_goods": [None],
            "check_settle_info": [make_settle()],
            "get_capacity": [make_capacity(make_window("09:00", "11:00"))],
            "commit_pay": [Order(is_success=True, order_no="ORDER-1")],
            "push_notification": [None],
        }
        self.script.update(script or {})
        self.calls = []
        self.closed = False

    async def _respond(self, name, *args):
        self.calls.append((name, args))
        responses = self.script[name]
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response) and not isinstance(response, type):
            response = response(*args)
        if isinstance(response, Exception):
            raise response
        return response

    def names(self):
        return [name for name, _ in self.calls]

    async def init_session(self, config):
        return await self._respond("init_session", config)

    async def get_address(self):
        return await self._respond("get_address")

    async def save_delivery_address(self, session):
        return await self._respond("save_delivery_address", session)

    async def check_store(self, session):
        return await self._respond("check_store", session)

    async def check_cart(self, session):
        return await self._respond("check_cart", session)

    async def check_goods(self, session):
        return await self._respond("check_goods", session)

    async def check_settle_info(self, session):
        return await self._respond("check_settle_info", session)

    async def get_capacity(self, template_id):
        return await self._respond("get_capacity", template_id)

    async def commit_pay(self, session, slot):
        return await self._respond("commit_pay", session, slot)

    async def push_notification(self, session, text):
        return await self._respond("push_notification", session, text)

    async def close(self):
        self.closed = True


def vendor_error(kind, message=""):
    return VendorError(kind, message)


class SleepRecorder:
    """Stand-in for asyncio.sleep: records delays, only yields to the loop."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)

    @property
    def backoffs(self):
        return [d for d in self.delays if d > 0]


async def make_context(client, config=None, hub=None):
    """RunContext with an active flag, as Run Control would hand it over."""
    flag = RunFlag()
    generation = await flag.try_start()
    session = Session(config=config or make_config(), address=ADDRESS)
    return RunContext(
        session=session,
        client=client,
        hub=hub or BroadcastHub(),
        flag=flag,
        generation=generation,
    )


def stop_after(ctx, response):
    """Script entry that clears the run flag, then answers with `response`."""
    def _respond(*args):
        ctx.flag._active = False
        return response
    return _respond


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def client():
    return FakeVendorClient()


