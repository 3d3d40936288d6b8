"""
Cart Policy — quantity, fee, weight and slot rules

Pure functions applied by the acquisition engine between vendor calls:
- which cart items are eligible, and how far their quantity is clamped
- whether a settlement's delivery fee forces a cart restart
- overweight mitigation (drop one unit of the heaviest multi-unit item)
- rebuilding the delivery-slot set from a capacity poll

Nothing here talks to the network or the broadcast hub.
"""

from typing import Optional

from core.session import (
    Capacity,
    Cart,
    CartItem,
    Config,
    FloorInfo,
    Goods,
    SettleDeliveryInfo,
    SettleInfo,
    SlotKey,
)


# ============================================================
# CART SELECTION
# ============================================================

def is_eligible(item: CartItem) -> bool:
    """In stock, flagged in stock, on sale and available."""
    return (
        item.stock_quantity > 0
        and item.stock_status
        and item.is_put_on_sale
        and item.is_available
    )


def clamp_quantity(quantity: int, stock_quantity: int, limit_num: int = 0,
                   residue_purchase_num: int = 0) -> int:
    """
    Clamp a requested quantity: stock first, then the per-user limit,
    then the remaining-purchasable count. The last two only apply when
    a limit is set; remaining-purchasable can be stricter than the limit.
    """
    if quantity > stock_quantity:
        quantity = stock_quantity
    if limit_num > 0 and quantity > limit_num:
        quantity = limit_num
    if limit_num > 0 and quantity > residue_purchase_num:
        quantity = residue_purchase_num
    return max(quantity, 0)


def select_goods(floor: FloorInfo, only_selected: bool = False) -> list[Goods]:
    """
    Flatten a floor's three goods lists into the purchase list.

    Ineligible items and items clamped to zero are dropped. With
    only_selected, the result keeps items the user ticked in the cart.
    """
    goods: list[Goods] = []
    for item in floor.all_items():
        if not is_eligible(item):
            continue
        quantity = clamp_quantity(
            item.quantity, item.stock_quantity, item.limit_num, item.residue_purchase_num
        )
        if quantity > 0:
            goods.append(item.to_goods(quantity))

    if only_selected:
        goods = [g for g in goods if g.is_selected]
    return goods


def match_floor(cart: Optional[Cart], floor_id: int, delivery_type: int) -> Optional[FloorInfo]:
    """The cart floor for the configured floor id and delivery type (last match wins)."""
    if cart is None:
        return None
    matched = None
    for floor in cart.floors:
        if floor.floor_id == floor_id and floor.delivery_type == delivery_type:
            matched = floor
    return matched


# ============================================================
# SETTLEMENT FEE RULE
# ============================================================

def fee_forces_cart_restart(config: Config, settle: SettleInfo) -> bool:
    """Free delivery required but the settlement charges a fee."""
    return config.require_free_delivery and settle.delivery_fee != "0"


# ============================================================
# OVERWEIGHT MITIGATION
# ============================================================

def relieve_overweight(goods: list[Goods]) -> Optional[Goods]:
    """
    Remove one unit from the heaviest item, in place.

    The scan starts from the last entry and only moves to an item holding
    more than one unit whose weight is strictly greater, so ties go to the
    later position. The chosen item loses one unit, or is removed when it
    only had one. Returns the affected entry, or None when the list is empty.
    """
    if not goods:
        return None

    heaviest = len(goods) - 1
    for index, item in enumerate(goods):
        if item.quantity > 1 and item.weight > goods[heaviest].weight:
            heaviest = index

    target = goods[heaviest]
    if target.quantity > 1:
        target.quantity -= 1
    else:
        del goods[heaviest]
    return target


def total_units(goods: list[Goods]) -> int:
    return sum(g.quantity for g in goods)


def total_weight(goods: list[Goods]) -> float:
    return sum(g.weight * g.quantity for g in goods)


# ============================================================
# DELIVERY SLOTS
# ============================================================

def build_slots(capacity: Capacity, delivery_type: int = 0) -> dict[SlotKey, SettleDeliveryInfo]:
    """One capacity generation: every window that is neither full nor disabled."""
    slots: dict[SlotKey, SettleDeliveryInfo] = {}
    for day in capacity.days:
        for window in day.windows:
            if not window.is_open:
                continue
            slot = SettleDeliveryInfo(
                arrival_time_str=f"{day.str_date} {window.start_time} - {window.end_time}",
                expect_arrival_time=window.start_real_time,
                expect_arrival_end_time=window.end_real_time,
                delivery_type=delivery_type,
            )
            slots[slot.key] = slot
    return slots
