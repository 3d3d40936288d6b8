"""
Vendor Client — contract for the commerce platform

The engine performs exactly one remote operation per pipeline stage through
a VendorClient. Implementations own transport, auth and response decoding;
they report failures by raising VendorError with one of the ErrorKind values
below. The engine never sees raw vendor codes.

Implementations are plugged in at startup (VENDOR_CLIENT=module:attr) and
instantiated once per configured session.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

from core.session import (
    Address,
    Capacity,
    Cart,
    Config,
    Order,
    Session,
    SettleDeliveryInfo,
    SettleInfo,
    Store,
)

logger = logging.getLogger("slotgrab.vendor")


class ErrorKind(Enum):
    """Flat, vendor-defined failure taxonomy."""
    RATE_LIMITED = "rate_limited"
    WEIGHT_EXCEEDED = "weight_exceeded"
    OUT_OF_STOCK = "out_of_stock"
    PRESALE_NOT_STARTED = "presale_not_started"
    CART_CHANGED = "cart_changed"
    QUANTITY_EXCEEDS_LIMIT = "quantity_exceeds_limit"
    STORE_CLOSED = "store_closed"
    DELIVERY_INFO_UNAVAILABLE = "delivery_info_unavailable"
    SLOT_CLOSED = "slot_closed"
    CAPACITY_DECREMENT_FAILED = "capacity_decrement_failed"
    SLOT_NOT_DELIVERABLE = "slot_not_deliverable"
    NO_MATCHING_DELIVERY_MODE = "no_matching_delivery_mode"
    CAPACITY_UNAVAILABLE = "capacity_unavailable"
    OTHER = "other"


class VendorError(Exception):
    """A remote call failed with a known kind."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class VendorClient(ABC):
    """
    One session's view of the vendor platform.

    Every method is awaited by the engine with no timeout of its own;
    in-flight calls are never cancelled by a stop request.
    """

    _notifier = None

    @abstractmethod
    async def init_session(self, config: Config) -> Address:
        """Authenticate and resolve the delivery address to use."""
        ...

    @abstractmethod
    async def get_address(self) -> list[Address]:
        ...

    @abstractmethod
    async def save_delivery_address(self, session: Session) -> None:
        ...

    @abstractmethod
    async def check_store(self, session: Session) -> list[Store]:
        ...

    @abstractmethod
    async def check_cart(self, session: Session) -> Cart:
        ...

    @abstractmethod
    async def check_goods(self, session: Session) -> None:
        """Raises VendorError(OUT_OF_STOCK | OTHER) on validation failure."""
        ...

    @abstractmethod
    async def check_settle_info(self, session: Session) -> SettleInfo:
        """Raises VendorError(CART_CHANGED | RATE_LIMITED | NO_MATCHING_DELIVERY_MODE | OTHER)."""
        ...

    @abstractmethod
    async def get_capacity(self, template_id: str) -> Capacity:
        """Raises VendorError(CAPACITY_UNAVAILABLE | OTHER)."""
        ...

    @abstractmethod
    async def commit_pay(self, session: Session, slot: SettleDeliveryInfo) -> Order:
        ...

    async def push_notification(self, session: Session, text: str) -> None:
        """
        Send a success notification to the configured device.

        Default goes through Bark; a single attempt, retried by the engine.
        """
        if self._notifier is None:
            from core.adapters.bark_adapter import BarkNotifier
            self._notifier = BarkNotifier()
        await self._notifier.push(session.config.push_id, text)

    async def close(self) -> None:
        if self._notifier is not None:
            await self._notifier.close()


ClientFactory = Callable[[Config], VendorClient]


def load_client_factory(target: str) -> ClientFactory:
    """
    Resolve "package.module:attribute" to a client factory.

    The attribute may be a VendorClient subclass or any callable taking a
    Config. Raises ImportError / AttributeError / TypeError on a bad target.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ImportError(f"Vendor client target must look like 'module:attr', got {target!r}")

    module = importlib.import_module(module_name)
    factory: Optional[Callable] = getattr(module, attr, None)
    if factory is None:
        raise AttributeError(f"{module_name} has no attribute {attr!r}")
    if not callable(factory):
        raise TypeError(f"{target} is not callable")

    logger.info(f"Vendor client factory loaded: {target}")
    return factory
