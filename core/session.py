"""
Session Model — one acquisition attempt's mutable snapshot

Holds what the engine learns from the vendor while walking the pipeline:
- Config: immutable per-session settings from the configure call
- Address: receiver picked at configure time, read-only afterwards
- Store map: keyed by store id, upserted on template/area-block change
- FloorInfo / Goods: the matched cart floor and the policy-adjusted purchase list
- Slots: the live delivery windows of the current capacity generation

Only the acquisition engine mutates a Session while a run is active.
Observers read it through status snapshots.
"""

from dataclasses import dataclass, field
from typing import Optional


# ============================================================
# CONFIG
# ============================================================

@dataclass(frozen=True)
class Config:
    """Per-session settings. Replaced wholesale by a new configure call."""
    auth_token: str
    floor_id: int = 1
    delivery_type: int = 2
    longitude: str = ""
    latitude: str = ""
    device_id: str = ""
    track_info: str = ""
    promotion_ids: tuple[str, ...] = ()
    address_id: str = ""
    pay_method: int = 1
    require_free_delivery: bool = False
    only_selected: bool = False
    store_conf: str = ""          # Optional store preload file
    push_id: str = ""             # Optional push-notification device key


# ============================================================
# ADDRESS / STORE
# ============================================================

@dataclass
class Address:
    address_id: str
    name: str = ""
    mobile: str = ""
    province_name: str = ""
    city_name: str = ""
    district_name: str = ""
    receiver_address: str = ""
    detail_address: str = ""
    latitude: str = ""
    longitude: str = ""

    def describe(self) -> str:
        return " ".join(p for p in (self.district_name, self.receiver_address, self.detail_address) if p)

    def to_dict(self) -> dict:
        return {
            "addressId": self.address_id,
            "name": self.name,
            "mobile": self.mobile,
            "provinceName": self.province_name,
            "cityName": self.city_name,
            "districtName": self.district_name,
            "receiverAddress": self.receiver_address,
            "detailAddress": self.detail_address,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass
class Store:
    store_id: str
    store_name: str = ""
    delivery_template_id: str = ""
    area_block_id: str = ""
    delivery_type: int = 0

    def differs_from(self, other: "Store") -> bool:
        """True when the vendor reports a changed template or area block."""
        return (
            self.delivery_template_id != other.delivery_template_id
            or self.area_block_id != other.area_block_id
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Store":
        """
        Build a Store from a preload-file entry.

        Accepts the flat field names as well as the vendor's nested
        verify-data blocks.
        """
        template_id = data.get("storeDeliveryTemplateId") or (
            data.get("storeRecmdDeliveryTemplateData") or {}
        ).get("storeDeliveryTemplateId", "")
        area_block_id = data.get("areaBlockId") or (
            data.get("storeAreaBlockVerifyData") or {}
        ).get("areaBlockId", "")
        delivery_type = data.get("deliveryType") or (
            data.get("storeDeliveryModeVerifyData") or {}
        ).get("deliveryType", 0)
        return cls(
            store_id=str(data.get("storeId", "")),
            store_name=data.get("storeName", ""),
            delivery_template_id=str(template_id or ""),
            area_block_id=str(area_block_id or ""),
            delivery_type=int(delivery_type or 0),
        )

    def to_dict(self) -> dict:
        return {
            "storeId": self.store_id,
            "storeName": self.store_name,
            "storeDeliveryTemplateId": self.delivery_template_id,
            "areaBlockId": self.area_block_id,
            "deliveryType": self.delivery_type,
        }


# ============================================================
# CART / GOODS
# ============================================================

@dataclass
class CartItem:
    """One line of a cart floor, exactly as the vendor reported it."""
    spu_id: str
    goods_name: str = ""
    store_id: str = ""
    sku_id: str = ""
    price: int = 0
    quantity: int = 0                 # Requested quantity
    stock_quantity: int = 0
    stock_status: bool = False        # In-stock flag
    is_put_on_sale: bool = False
    is_available: bool = False
    limit_num: int = 0                # Per-user limit, 0 = none
    residue_purchase_num: int = 0     # Remaining purchasable under the limit
    is_selected: bool = False
    weight: float = 0.0

    def to_goods(self, quantity: int) -> "Goods":
        return Goods(
            spu_id=self.spu_id,
            goods_name=self.goods_name,
            store_id=self.store_id,
            price=self.price,
            quantity=quantity,
            weight=self.weight,
            is_selected=self.is_selected,
        )


@dataclass
class Goods:
    """A purchase-list entry. Order in the session list is significant."""
    spu_id: str
    goods_name: str = ""
    store_id: str = ""
    price: int = 0
    quantity: int = 0
    weight: float = 0.0
    is_selected: bool = False

    def to_dict(self) -> dict:
        return {
            "spuId": self.spu_id,
            "goodsName": self.goods_name,
            "storeId": self.store_id,
            "price": self.price,
            "quantity": self.quantity,
            "weight": self.weight,
            "isSelected": self.is_selected,
        }


@dataclass
class FloorInfo:
    floor_id: int
    delivery_type: int
    store_id: str = ""
    amount: str = ""
    quantity: int = 0
    normal_goods: list[CartItem] = field(default_factory=list)
    shortage_stock_goods: list[CartItem] = field(default_factory=list)
    out_of_stock_goods: list[CartItem] = field(default_factory=list)

    def all_items(self) -> list[CartItem]:
        """Normal, low-stock, then out-of-stock items, in that order."""
        return [*self.normal_goods, *self.shortage_stock_goods, *self.out_of_stock_goods]


@dataclass
class Cart:
    floors: list[FloorInfo] = field(default_factory=list)


# ============================================================
# SETTLEMENT / CAPACITY
# ============================================================

@dataclass
class SettleDelivery:
    delivery_type: int = 0
    delivery_name: str = ""
    delivery_template_id: str = ""
    area_block_id: str = ""


@dataclass
class SettleInfo:
    delivery_fee: str = "0"
    floor_id: int = 0
    settle_delivery: SettleDelivery = field(default_factory=SettleDelivery)


@dataclass
class CapacityWindow:
    start_time: str
    end_time: str
    start_real_time: str = ""
    end_real_time: str = ""
    full: bool = False
    disabled: bool = False

    @property
    def is_open(self) -> bool:
        return not self.full and not self.disabled


@dataclass
class CapacityDay:
    str_date: str
    windows: list[CapacityWindow] = field(default_factory=list)
    delivery_desc: str = ""
    date_full: bool = False


@dataclass
class Capacity:
    days: list[CapacityDay] = field(default_factory=list)


SlotKey = tuple[str, str]


@dataclass
class SettleDeliveryInfo:
    """One submittable delivery window."""
    arrival_time_str: str
    expect_arrival_time: str
    expect_arrival_end_time: str
    delivery_type: int = 0

    @property
    def key(self) -> SlotKey:
        """Natural key: the window's own start/end timestamps."""
        return (self.expect_arrival_time, self.expect_arrival_end_time)

    def to_dict(self) -> dict:
        return {
            "arrivalTimeStr": self.arrival_time_str,
            "expectArrivalTime": self.expect_arrival_time,
            "expectArrivalEndTime": self.expect_arrival_end_time,
            "deliveryType": self.delivery_type,
        }


# ============================================================
# ORDER
# ============================================================

@dataclass
class PayInfo:
    pay_info: str = ""
    out_trade_no: str = ""
    total_amt: int = 0


@dataclass
class Order:
    """Terminal artifact of a successful run."""
    is_success: bool
    order_no: str
    pay_amount: str = ""
    channel: str = ""
    pay_info: PayInfo = field(default_factory=PayInfo)

    def to_dict(self) -> dict:
        # pay_info is an opaque payment payload; not relayed to observers.
        return {
            "isSuccess": self.is_success,
            "orderNo": self.order_no,
            "payAmount": self.pay_amount,
            "channel": self.channel,
        }


# ============================================================
# SESSION (aggregate root)
# ============================================================

@dataclass
class Session:
    config: Config
    address: Address
    stores: dict[str, Store] = field(default_factory=dict)
    floor_info: Optional[FloorInfo] = None
    goods: list[Goods] = field(default_factory=list)
    slots: dict[SlotKey, SettleDeliveryInfo] = field(default_factory=dict)
    delivery_fee: str = ""

    def upsert_store(self, store: Store) -> bool:
        """
        Insert or replace a store when it is new or its template/area block changed.
        Returns True when the map was modified. Entries are never removed.
        """
        known = self.stores.get(store.store_id)
        if known is not None and not known.differs_from(store):
            return False
        self.stores[store.store_id] = store
        return True

    def merge_store(self, store: Store) -> bool:
        """Additive merge: only add stores not already known."""
        if store.store_id in self.stores:
            return False
        self.stores[store.store_id] = store
        return True

    def floor_store(self) -> Optional[Store]:
        if self.floor_info is None:
            return None
        return self.stores.get(self.floor_info.store_id)
