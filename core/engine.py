"""
Acquisition Engine — delivery slot + order state machine

Walks a fixed pipeline of vendor checks and restarts from a stage-specific
point on every failure:

    SAVING_ADDRESS → CHECKING_STORES → CHECKING_CART → CHECKING_GOODS
      → CHECKING_SETTLE → CHECKING_CAPACITY → SUBMITTING_ORDER → SUCCESS

Architecture:
- Stage: named pipeline stages (+ terminal SUCCESS / STOPPED)
- TRANSITIONS: data table (stage, outcome) → Transition(target, delay, slot action)
- next_transition(): pure lookup over the table
- AcquisitionEngine: driver loop; one handler per stage, each performing
  exactly one vendor call and returning an outcome

The engine never terminates on error, only on success or a stop request.
The stop flag is checked before every stage and before every submission
attempt; in-flight vendor calls are never cancelled.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar, Union

from core.broadcast import LogLevel, RunState, StatusUpdate
from core.cart_policy import (
    build_slots,
    fee_forces_cart_restart,
    match_floor,
    relieve_overweight,
    select_goods,
)
from core.rules import RULES
from core.session import Order, Store
from core.vendor import ErrorKind, VendorError

if TYPE_CHECKING:
    from core.run_control import RunContext

logger = logging.getLogger("slotgrab.engine")

T = TypeVar("T")


# ============================================================
# STATES & OUTCOMES
# ============================================================

class Stage(Enum):
    SAVING_ADDRESS = "saving_address"
    CHECKING_STORES = "checking_stores"
    CHECKING_CART = "checking_cart"
    CHECKING_GOODS = "checking_goods"
    CHECKING_SETTLE = "checking_settle"
    CHECKING_CAPACITY = "checking_capacity"
    SUBMITTING_ORDER = "submitting_order"
    SUCCESS = "success"
    STOPPED = "stopped"


TERMINAL_STAGES = frozenset({Stage.SUCCESS, Stage.STOPPED})


class Outcome(Enum):
    """Stage results that are not vendor error kinds."""
    OK = "ok"
    EMPTY = "empty"                          # Cart or capacity produced nothing
    EMPTY_AFTER_RATE_LIMIT = "empty_after_rate_limit"
    FEE_REJECTED = "fee_rejected"            # Settlement charges a fee, free delivery required
    SLOTS_EXHAUSTED = "slots_exhausted"      # Every slot of the generation was rejected
    GOODS_EXHAUSTED = "goods_exhausted"      # Overweight mitigation emptied the goods list
    STOPPED = "stopped"


StageResult = Union[Outcome, ErrorKind]


class SlotAction(Enum):
    NONE = "none"
    RETRY = "retry"              # Resubmit the same slot immediately
    RELIEVE_WEIGHT = "relieve"   # Drop one heavy unit, then resubmit the same slot
    DISCARD = "discard"          # Remove this slot, move on to the next one


@dataclass(frozen=True)
class Transition:
    target: Stage
    delay: float = 0.0
    slot_action: SlotAction = SlotAction.NONE


# Key used for "any other result" in a stage's table.
ANY = "*"

_BACKOFF = RULES.BACKOFF_SECONDS

TRANSITIONS: dict[Stage, dict] = {
    Stage.SAVING_ADDRESS: {
        Outcome.OK: Transition(Stage.CHECKING_STORES),
        ANY: Transition(Stage.SAVING_ADDRESS, _BACKOFF),
    },
    Stage.CHECKING_STORES: {
        Outcome.OK: Transition(Stage.CHECKING_CART),
        ANY: Transition(Stage.CHECKING_STORES, _BACKOFF),
    },
    Stage.CHECKING_CART: {
        Outcome.OK: Transition(Stage.CHECKING_GOODS),
        Outcome.EMPTY_AFTER_RATE_LIMIT: Transition(Stage.CHECKING_CART, _BACKOFF),
        ANY: Transition(Stage.CHECKING_CART),
    },
    Stage.CHECKING_GOODS: {
        Outcome.OK: Transition(Stage.CHECKING_SETTLE),
        ANY: Transition(Stage.CHECKING_CART, _BACKOFF),
    },
    Stage.CHECKING_SETTLE: {
        Outcome.OK: Transition(Stage.CHECKING_CAPACITY),
        Outcome.FEE_REJECTED: Transition(Stage.CHECKING_CART, _BACKOFF),
        ErrorKind.CART_CHANGED: Transition(Stage.CHECKING_CART, _BACKOFF),
        ErrorKind.RATE_LIMITED: Transition(Stage.CHECKING_GOODS, _BACKOFF),
        ErrorKind.NO_MATCHING_DELIVERY_MODE: Transition(Stage.SAVING_ADDRESS, _BACKOFF),
        ANY: Transition(Stage.CHECKING_GOODS, _BACKOFF),
    },
    Stage.CHECKING_CAPACITY: {
        Outcome.OK: Transition(Stage.SUBMITTING_ORDER),
        Outcome.EMPTY: Transition(Stage.CHECKING_CAPACITY, _BACKOFF),
        ErrorKind.CAPACITY_UNAVAILABLE: Transition(Stage.CHECKING_STORES),
        ANY: Transition(Stage.CHECKING_CAPACITY, _BACKOFF),
    },
    Stage.SUBMITTING_ORDER: {
        Outcome.OK: Transition(Stage.SUCCESS),
        Outcome.SLOTS_EXHAUSTED: Transition(Stage.CHECKING_CAPACITY),
        Outcome.GOODS_EXHAUSTED: Transition(Stage.CHECKING_CART),
        ErrorKind.RATE_LIMITED: Transition(Stage.SUBMITTING_ORDER, slot_action=SlotAction.RETRY),
        ErrorKind.WEIGHT_EXCEEDED: Transition(Stage.SUBMITTING_ORDER, slot_action=SlotAction.RELIEVE_WEIGHT),
        ErrorKind.OUT_OF_STOCK: Transition(Stage.CHECKING_CART),
        ErrorKind.PRESALE_NOT_STARTED: Transition(Stage.CHECKING_CART),
        ErrorKind.CART_CHANGED: Transition(Stage.CHECKING_CART),
        ErrorKind.QUANTITY_EXCEEDS_LIMIT: Transition(Stage.CHECKING_CART),
        ErrorKind.STORE_CLOSED: Transition(Stage.CHECKING_STORES),
        ErrorKind.DELIVERY_INFO_UNAVAILABLE: Transition(Stage.CHECKING_STORES),
        ErrorKind.SLOT_CLOSED: Transition(Stage.SUBMITTING_ORDER, slot_action=SlotAction.DISCARD),
        ErrorKind.CAPACITY_DECREMENT_FAILED: Transition(Stage.SUBMITTING_ORDER, slot_action=SlotAction.DISCARD),
        ErrorKind.SLOT_NOT_DELIVERABLE: Transition(Stage.SUBMITTING_ORDER, slot_action=SlotAction.DISCARD),
        ANY: Transition(Stage.CHECKING_CAPACITY),
    },
}


def next_transition(stage: Stage, result: StageResult) -> Transition:
    """Pure lookup: where the pipeline goes after `stage` produced `result`."""
    if result is Outcome.STOPPED:
        return Transition(Stage.STOPPED)
    if stage in TERMINAL_STAGES:
        return Transition(stage)
    table = TRANSITIONS[stage]
    return table.get(result, table[ANY])


# ============================================================
# ENGINE
# ============================================================

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class AcquisitionEngine:
    """
    Drives one acquisition run over a RunContext.

    sleep is injectable so backoffs can be observed without waiting.
    """

    def __init__(
        self,
        context: "RunContext",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._ctx = context
        self._session = context.session
        self._client = context.client
        self._hub = context.hub
        self._sleep = sleep
        self.stage: Stage = Stage.SAVING_ADDRESS
        self.order: Optional[Order] = None
        self._handlers = {
            Stage.SAVING_ADDRESS: self._save_address,
            Stage.CHECKING_STORES: self._check_stores,
            Stage.CHECKING_CART: self._check_cart,
            Stage.CHECKING_GOODS: self._check_goods,
            Stage.CHECKING_SETTLE: self._check_settle,
            Stage.CHECKING_CAPACITY: self._check_capacity,
            Stage.SUBMITTING_ORDER: self._submit_order,
        }

    @property
    def session(self):
        return self._session

    # ----------------------------------------------------------
    # DRIVER
    # ----------------------------------------------------------

    async def run(self) -> Stage:
        """Run until SUCCESS or STOPPED. Always clears the run flag on exit."""
        self.stage = Stage.SAVING_ADDRESS
        try:
            while self.stage not in TERMINAL_STAGES:
                if not await self._ctx.is_active():
                    self.stage = Stage.STOPPED
                    break
                result = await self._handlers[self.stage]()
                transition = next_transition(self.stage, result)
                if transition.target not in TERMINAL_STAGES and transition.target is not self.stage:
                    logger.debug(f"{self.stage.value} → {transition.target.value} ({result.value})")
                # Zero delay still yields to the event loop.
                await self._sleep(transition.delay)
                self.stage = transition.target
        finally:
            await self._ctx.finish()

        if self.stage is Stage.STOPPED:
            self._log(LogLevel.WARNING, "Acquisition stopped")
        return self.stage

    # ----------------------------------------------------------
    # STAGES
    # ----------------------------------------------------------

    async def _save_address(self) -> StageResult:
        self._log(LogLevel.INFO, "Switching cart delivery address...")
        self._status("saving_address")

        _, kind = await self._call(self._client.save_delivery_address(self._session), "save address")
        if kind is not None:
            return kind

        address = self._session.address
        self._log(LogLevel.SUCCESS, f"Address saved: {address.describe()}")
        self._status("address_saved", address=address)
        self._preload_stores()
        return Outcome.OK

    def _preload_stores(self) -> None:
        """Merge the optional store preload file; known stores win."""
        path_str = self._session.config.store_conf
        if not path_str:
            return
        path = Path(path_str)
        if not path.exists():
            return

        self._log(LogLevel.INFO, "Preloading store list...")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self._log(LogLevel.ERROR, f"Failed to read store preload file: {e}")
            return

        if isinstance(data, dict):
            inner = data.get("data")
            data = (inner if isinstance(inner, dict) else data).get("storeList", [])
        if not isinstance(data, list):
            self._log(LogLevel.ERROR, "Store preload file has no store list")
            return

        for raw in data:
            if not isinstance(raw, dict):
                continue
            store = Store.from_dict(raw)
            if store.store_id and self._session.merge_store(store):
                self._log(LogLevel.INFO, f"Loaded store: {store.store_name}")

    async def _check_stores(self) -> StageResult:
        self._log(LogLevel.INFO, "Looking up stores near the address...")
        self._status("checking_stores")

        stores, kind = await self._call(self._client.check_store(self._session), "check stores")
        if kind is not None:
            return kind

        changed = [s for s in stores or [] if self._session.upsert_store(s)]
        for store in changed:
            self._log(LogLevel.INFO, f"Found store: {store.store_name}")
        self._status("stores_loaded", stores=changed)
        return Outcome.OK

    async def _check_cart(self) -> StageResult:
        self._log(LogLevel.INFO, "Fetching valid goods from the cart...")
        self._status("checking_cart")

        session = self._session
        config = session.config
        cart, kind = await self._call(self._client.check_cart(session), "check cart")
        floor = match_floor(cart, config.floor_id, config.delivery_type)
        if floor is not None:
            session.floor_info = floor
            session.goods = select_goods(floor, config.only_selected)
        else:
            session.goods = []

        for goods in session.goods:
            self._log(LogLevel.INFO, f"Goods: {goods.goods_name} x{goods.quantity} @ {goods.price}")

        if not session.goods:
            self._log(LogLevel.WARNING, "No valid goods in the cart")
            if kind is ErrorKind.RATE_LIMITED:
                return Outcome.EMPTY_AFTER_RATE_LIMIT
            return Outcome.EMPTY

        self._status("cart_loaded", goods=list(session.goods))
        return Outcome.OK

    async def _check_goods(self) -> StageResult:
        self._log(LogLevel.INFO, "Validating goods...")
        self._status("checking_goods")

        _, kind = await self._call(self._client.check_goods(self._session), "goods validation")
        return Outcome.OK if kind is None else kind

    async def _check_settle(self) -> StageResult:
        session = self._session
        settle, kind = await self._call(self._client.check_settle_info(session), "settlement check")
        if kind is not None:
            return kind

        session.delivery_fee = settle.delivery_fee
        self._log(LogLevel.INFO, f"Delivery fee: {settle.delivery_fee}")
        self._status("settle_checked", delivery_fee=settle.delivery_fee)

        store = session.floor_store()
        delivery = settle.settle_delivery
        if store is not None and store.delivery_template_id != delivery.delivery_template_id:
            store.delivery_template_id = delivery.delivery_template_id
            store.area_block_id = delivery.area_block_id

        if fee_forces_cart_restart(session.config, settle):
            self._log(LogLevel.WARNING, "Delivery fee required, re-checking the cart")
            return Outcome.FEE_REJECTED
        return Outcome.OK

    async def _check_capacity(self) -> StageResult:
        self._log(LogLevel.INFO, "Fetching available delivery times...")
        self._status("checking_capacity")

        session = self._session
        store = session.floor_store()
        template_id = store.delivery_template_id if store is not None else ""
        capacity, kind = await self._call(self._client.get_capacity(template_id), "capacity check")
        if kind is not None:
            return kind

        # New generation: previous keys are never reused.
        session.slots = build_slots(capacity, session.config.delivery_type)
        for slot in session.slots.values():
            self._log(LogLevel.SUCCESS, f"Available delivery window: {slot.arrival_time_str}")

        if not session.slots:
            self._log(LogLevel.WARNING, "No delivery window available")
            return Outcome.EMPTY

        self._status("capacity_loaded", time_slots=list(session.slots.values()))
        return Outcome.OK

    async def _submit_order(self) -> StageResult:
        session = self._session
        while session.slots:
            for key, slot in list(session.slots.items()):
                while True:
                    if not await self._ctx.is_active():
                        return Outcome.STOPPED

                    self._log(LogLevel.INFO, f"Submitting order for window {slot.arrival_time_str}")
                    self._status("submitting_order")

                    order, kind = await self._call(self._client.commit_pay(session, slot), "order submission")
                    if kind is None:
                        await self._on_success(order)
                        return Outcome.OK

                    transition = next_transition(Stage.SUBMITTING_ORDER, kind)
                    action = transition.slot_action
                    if action is SlotAction.RETRY:
                        self._log(LogLevel.INFO, "Retrying immediately...")
                        await self._sleep(0)
                        continue
                    if action is SlotAction.RELIEVE_WEIGHT:
                        removed = relieve_overweight(session.goods)
                        if removed is not None:
                            self._log(LogLevel.WARNING, f"Overweight: removed one {removed.goods_name}")
                        if not session.goods:
                            return Outcome.GOODS_EXHAUSTED
                        await self._sleep(0)
                        continue
                    if action is SlotAction.DISCARD:
                        session.slots.pop(key, None)
                        break
                    return kind
        return Outcome.SLOTS_EXHAUSTED

    async def _on_success(self, order: Order) -> None:
        self.order = order
        self._log(LogLevel.SUCCESS, f"Order placed! Order number: {order.order_no}. Pay for it in the app.")
        self._status("order_success", state=RunState.SUCCESS, order=order)

        if not self._session.config.push_id:
            return
        # Unbounded and not cancellable by stop: the order already exists.
        text = f"order placed, order number: {order.order_no}"
        while True:
            try:
                await self._client.push_notification(self._session, text)
                break
            except Exception as e:
                logger.warning(f"Push notification failed, retrying: {e}")
                await self._sleep(RULES.PUSH_RETRY_SECONDS)

    # ----------------------------------------------------------
    # HELPERS
    # ----------------------------------------------------------

    async def _call(self, call: Awaitable[T], what: str) -> tuple[Optional[T], Optional[ErrorKind]]:
        """Await one vendor call; (result, None) on success, (None, kind) on failure."""
        try:
            return await call, None
        except VendorError as e:
            self._log(LogLevel.ERROR, f"{what} failed [{e.kind.value}]: {e.message}")
            return None, e.kind
        except Exception as e:
            self._log(LogLevel.ERROR, f"{what} failed [other]: {e}")
            logger.debug(f"Unexpected vendor exception in {what}", exc_info=True)
            return None, ErrorKind.OTHER

    def _log(self, level: LogLevel, message: str) -> None:
        logger.log(_LOG_LEVELS[level], message)
        self._hub.log(level, message)

    def _status(self, step: str, state: RunState = RunState.RUNNING, **fields) -> None:
        self._hub.publish_status(StatusUpdate(step=step, status=state, **fields))

