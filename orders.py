"""
Order lifecycle

Creation and pricing, status changes, and the Telegram notifications each
change triggers. Prices are captured on the order lines when the order is
placed, so later catalog edits never reprice existing orders.

    pending_payment -> payment_verified -> passport_requested
        -> passport_verified -> confirmed
    any non-terminal state -> rejected

update_status is permissive by default (admins may set any status); pass
strict_transitions=True to enforce the arrows above.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

import config
from auth import AccountPrincipal, Principal, is_admin
from database import (
    create_document,
    get_document,
    get_documents,
    serialize,
    to_object_id,
    update_document,
)
from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationFailed
from notifications import OrderNotifier
from schemas import Order, OrderCreate, OrderLine, OrderLineRequest, OrderStatus, Setting

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAYMENT_VERIFIED, OrderStatus.REJECTED},
    OrderStatus.PAYMENT_VERIFIED: {OrderStatus.PASSPORT_REQUESTED, OrderStatus.REJECTED},
    OrderStatus.PASSPORT_REQUESTED: {OrderStatus.PASSPORT_VERIFIED, OrderStatus.REJECTED},
    OrderStatus.PASSPORT_VERIFIED: {OrderStatus.CONFIRMED, OrderStatus.REJECTED},
    OrderStatus.CONFIRMED: set(),
    OrderStatus.REJECTED: set(),
}

SETTINGS_KEY = "shop"


def validate_status_transition(current: str, new: str) -> None:
    """Raise Conflict unless new is current or one of its successors."""
    current_status = OrderStatus(current)
    new_status = OrderStatus(new)
    if new_status == current_status:
        return
    if new_status not in _ALLOWED_TRANSITIONS[current_status]:
        raise Conflict(f"Cannot change order status from {current_status.value} to {new_status.value}")


def calculate_prepayment(total_amount: float, percentage: float) -> int:
    # whole currency units, halves rounded up
    amount = Decimal(str(total_amount)) * Decimal(str(percentage)) / 100
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# Shop settings

def load_prepayment_percentage(db) -> float:
    doc = db["setting"].find_one({"key": SETTINGS_KEY})
    if not doc or doc.get("prepayment_percentage") is None:
        return config.DEFAULT_PREPAYMENT_PERCENTAGE
    return float(doc["prepayment_percentage"])


def save_prepayment_percentage(db, percentage: float) -> float:
    if not 0 <= percentage <= 100:
        raise ValidationFailed.for_field("prepayment_percentage", "Percentage must be between 0 and 100")
    setting = Setting(key=SETTINGS_KEY, prepayment_percentage=percentage)
    db["setting"].update_one({"key": setting.key}, {"$set": setting.model_dump()}, upsert=True)
    return setting.prepayment_percentage


class OrderEngine:
    def __init__(self, db, notifier: Optional[OrderNotifier] = None, strict_transitions: bool = False):
        self.db = db
        self.notifier = notifier or OrderNotifier()
        self.strict_transitions = strict_transitions

    # -------------------- access --------------------

    @staticmethod
    def _require_account(principal: Principal) -> AccountPrincipal:
        if not isinstance(principal, AccountPrincipal):
            raise Unauthorized("Token not provided")
        return principal

    def _require_admin(self, principal: Principal) -> AccountPrincipal:
        account = self._require_account(principal)
        if not is_admin(account):
            raise Forbidden("Access denied")
        return account

    def _load(self, order_id: str) -> Dict[str, Any]:
        order = get_document(self.db, "order", order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    def _recipient(self, user_id) -> Optional[Dict[str, Any]]:
        # notifications are best-effort; a failed lookup only drops the message
        try:
            return get_document(self.db, "user", user_id)
        except PyMongoError as e:
            logger.warning("Could not load notification recipient %s: %s", user_id, e)
            return None

    # -------------------- pricing --------------------

    def price_lines(self, lines: List[OrderLineRequest]) -> Tuple[List[OrderLine], float, List[Dict[str, Any]]]:
        """Resolve every requested line against the catalog.

        Returns the snapshotted order lines, the order total, and the product
        documents used (for the admin notification).
        """
        if not lines:
            raise ValidationFailed.for_field("items", "At least one item is required")
        order_lines: List[OrderLine] = []
        products: List[Dict[str, Any]] = []
        total = 0.0
        for line in lines:
            product = get_document(self.db, "product", line.product_id)
            if product is None:
                raise NotFound(f"Product {line.product_id} not found")
            if not product.get("in_stock", True):
                raise Conflict(f"Product {product.get('name')} is out of stock")
            price = float(product["price"])
            total += price * line.quantity
            order_lines.append(OrderLine(product_id=str(product["_id"]), quantity=line.quantity, price=price))
            products.append(product)
        return order_lines, total, products

    # -------------------- operations --------------------

    def create_order(self, principal: Principal, payload: OrderCreate) -> Dict[str, Any]:
        account = self._require_account(principal)
        order_lines, total, products = self.price_lines(payload.items)

        percentage = payload.prepayment_percentage
        if percentage is None:
            percentage = load_prepayment_percentage(self.db)
        if not 0 <= percentage <= 100:
            raise ValidationFailed.for_field("prepayment_percentage", "Percentage must be between 0 and 100")

        order = Order(
            user_id=account.account_id,
            items=order_lines,
            delivery_address=payload.delivery_address,
            contact_phone=payload.contact_phone,
            additional_phone=payload.additional_phone,
            telegram_username=payload.telegram_username,
            payment_screenshot=payload.payment_screenshot,
            total_amount=total,
            prepayment_amount=calculate_prepayment(total, percentage),
            prepayment_percentage=percentage,
        )
        document = order.model_dump(mode="json")
        # references are stored as ObjectIds
        document["user_id"] = to_object_id(order.user_id)
        for line in document["items"]:
            line["product_id"] = to_object_id(line["product_id"])
        stored = create_document(self.db, "order", document)
        logger.info("Order %s created by %s: total=%s prepayment=%s", stored["_id"], account.account_id, total, order.prepayment_amount)

        self.notifier.new_order(stored, self._recipient(stored["user_id"]), products)
        return serialize(stored)

    def get_order(self, principal: Principal, order_id: str) -> Dict[str, Any]:
        account = self._require_account(principal)
        order = self._load(order_id)
        if not is_admin(account) and str(order.get("user_id")) != account.account_id:
            raise Forbidden("Access denied")
        return self._present([order], with_phone=True)[0]

    def list_orders(self, principal: Principal) -> List[Dict[str, Any]]:
        self._require_admin(principal)
        orders = get_documents(self.db, "order", sort=[("created_at", -1)])
        return self._present(orders, with_phone=True)

    def list_my_orders(self, principal: Principal) -> List[Dict[str, Any]]:
        account = self._require_account(principal)
        orders = get_documents(
            self.db,
            "order",
            {"user_id": to_object_id(account.account_id)},
            sort=[("created_at", -1)],
        )
        return self._present(orders)

    def _present(self, orders: List[Dict[str, Any]], with_phone: bool = False) -> List[Dict[str, Any]]:
        """Serialize orders for reading.

        Every line gets its current catalog entry under "product" (None once the
        product is deleted); the snapshotted line price is left as it is. With
        with_phone, each order also carries the owner's phone as "user_phone".
        """
        product_ids = list({line["product_id"] for o in orders for line in o.get("items", [])})
        products = {
            p["_id"]: serialize(p)
            for p in get_documents(self.db, "product", {"_id": {"$in": product_ids}})
        }
        phones = {}
        if with_phone:
            user_ids = list({o["user_id"] for o in orders if o.get("user_id") is not None})
            phones = {
                u["_id"]: u.get("phone")
                for u in get_documents(self.db, "user", {"_id": {"$in": user_ids}})
            }
        result = []
        for order in orders:
            data = serialize(order)
            for line, raw in zip(data.get("items", []), order.get("items", [])):
                line["product"] = products.get(raw.get("product_id"))
            if with_phone:
                data["user_phone"] = phones.get(order.get("user_id"))
            result.append(data)
        return result

    def request_passport(self, principal: Principal, order_id: str) -> Dict[str, Any]:
        self._require_admin(principal)
        order = update_document(
            self.db,
            "order",
            order_id,
            {"status": OrderStatus.PASSPORT_REQUESTED.value},
            extra_filter={"status": OrderStatus.PAYMENT_VERIFIED.value},
        )
        if order is None:
            # distinguish a missing order from one in the wrong state
            self._load(order_id)
            raise Conflict("Order payment must be verified before requesting passport data")
        logger.info("Passport data requested for order %s", order["_id"])

        self.notifier.passport_requested(order, self._recipient(order.get("user_id")))
        return serialize(order)

    def update_status(self, principal: Principal, order_id: str, status: OrderStatus) -> Dict[str, Any]:
        self._require_admin(principal)
        new_status = OrderStatus(status)
        extra_filter = None
        if self.strict_transitions:
            current = self._load(order_id)
            validate_status_transition(current["status"], new_status)
            # compare-and-set against the status we validated
            extra_filter = {"status": current["status"]}

        order = update_document(self.db, "order", order_id, {"status": new_status.value}, extra_filter=extra_filter)
        if order is None:
            self._load(order_id)
            raise Conflict("Order status changed concurrently, retry")
        logger.info("Order %s status -> %s", order["_id"], new_status.value)

        self.notifier.status_changed(order, self._recipient(order.get("user_id")), new_status.value)
        return serialize(order)

    def attach_passport_data(self, principal: Principal, order_id: str, passport_data: str) -> Dict[str, Any]:
        self._require_admin(principal)
        if not passport_data or not passport_data.strip():
            raise ValidationFailed.for_field("passport_data", "Passport data is required")
        order = update_document(self.db, "order", order_id, {
            "passport_data": passport_data,
            "status": OrderStatus.PASSPORT_VERIFIED.value,
        })
        if order is None:
            raise NotFound("Order not found")
        logger.info("Passport data recorded for order %s", order["_id"])
        return serialize(order)
