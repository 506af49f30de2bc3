"""
Telegram notifications for orders

Admin alerts go to ADMIN_TELEGRAM_CHAT_ID, customer updates to the account's
linked telegram_id. Sending is best-effort: the order change is already saved
when these run, so every failure is logged and dropped.
"""
import asyncio
import logging
import os
import threading
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from telegram import Bot, Message
from telegram.error import TelegramError
from telegram.request import HTTPXRequest

import config
from schemas import OrderStatus

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class TelegramClient:
    """Blocking facade over telegram.Bot for the synchronous request handlers.

    python-telegram-bot is asyncio-only; the client owns one event loop and runs
    each call to completion on it, so the bot's HTTP pool stays bound to a
    single loop across requests.
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        bot: Optional[Bot] = None,
    ):
        self.bot = bot or Bot(
            token,
            base_url=f"{api_url.rstrip('/')}/bot",
            request=HTTPXRequest(connect_timeout=timeout, read_timeout=timeout, write_timeout=timeout),
        )
        self._loop = asyncio.new_event_loop()
        self._lock = threading.Lock()

    def _run(self, call: Callable[[], Awaitable[Any]]) -> Any:
        async def runner():
            await self.bot.initialize()
            return await call()

        with self._lock:
            try:
                return self._loop.run_until_complete(runner())
            except TelegramError as e:
                raise NotificationError(str(e)) from e

    def send_message(self, chat_id: str, text: str) -> Message:
        return self._run(lambda: self.bot.send_message(chat_id=chat_id, text=text))

    def send_photo(self, chat_id: str, photo: str, caption: Optional[str] = None) -> Message:
        if os.path.isfile(photo):
            with open(photo, "rb") as fh:
                return self._run(lambda: self.bot.send_photo(chat_id=chat_id, photo=fh, caption=caption))
        return self._run(lambda: self.bot.send_photo(chat_id=chat_id, photo=photo, caption=caption))

    def close(self) -> None:
        with self._lock:
            if self._loop.is_closed():
                return
            self._loop.run_until_complete(self.bot.shutdown())
            self._loop.close()


def _amount(value: Any) -> str:
    try:
        return f"{float(value):,.0f}".replace(",", " ")
    except (TypeError, ValueError):
        return str(value)


def format_new_order(order: Dict[str, Any], account: Optional[Dict[str, Any]], products: Dict[str, Dict[str, Any]]) -> str:
    lines = []
    for item in order.get("items", []):
        product = products.get(str(item.get("product_id"))) or {}
        name = product.get("name", str(item.get("product_id")))
        lines.append(f"- {name} x{item.get('quantity')} ({_amount(item.get('price'))} sum)")
    phone = account.get("phone") if account else "?"
    return "\n".join([
        f"🆕 New order #{order['_id']}",
        "",
        f"👤 Customer: {phone}",
        "📦 Items:",
        *lines,
        f"📍 Address: {order.get('delivery_address')}",
        f"📞 Phone: {order.get('contact_phone')}",
        f"💳 Prepayment: {_amount(order.get('prepayment_amount'))} sum ({order.get('prepayment_percentage'):g}%)",
        "",
        f"Status: {order.get('status')}",
    ])


STATUS_MESSAGES = {
    OrderStatus.PAYMENT_VERIFIED: "✅ Your payment is confirmed! Order #{id} has been accepted for processing.",
    OrderStatus.PASSPORT_REQUESTED: "📋 We need your passport data to process order #{id}. Please send it to this bot.",
    OrderStatus.CONFIRMED: "🎉 Your order #{id} has been placed successfully! We will contact you about delivery.",
    OrderStatus.REJECTED: "❌ Order #{id} was rejected. Please contact support for details.",
}


def format_status_message(order_id: Any, status: str) -> Optional[str]:
    try:
        template = STATUS_MESSAGES.get(OrderStatus(status))
    except ValueError:
        return None
    return template.format(id=order_id) if template else None


def format_passport_request(order_id: Any) -> str:
    return (
        f"📋 We need your passport data to process order #{order_id}.\n\n"
        "Please send:\n"
        "- Passport series and number\n"
        "- Date of issue\n"
        "- Issuing authority"
    )


class OrderNotifier:
    """Formats order events and sends them through an optional bot client."""

    def __init__(
        self,
        client: Optional[TelegramClient] = None,
        admin_chat_id: Optional[str] = None,
        upload_dir: str = config.UPLOAD_DIR,
    ):
        self.client = client
        self.admin_chat_id = admin_chat_id
        self.upload_dir = upload_dir

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _send(
        self,
        chat_id: Optional[str],
        render: Callable[[], Optional[str]],
        photo: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> bool:
        if self.client is None or not chat_id:
            logger.debug("Notification skipped (bot enabled=%s, chat=%s)", self.enabled, bool(chat_id))
            return False
        try:
            text = render()
            if text is None:
                return False
            self.client.send_message(chat_id, text)
            if photo:
                self.client.send_photo(chat_id, self._resolve_photo(photo), caption=caption)
        except Exception as e:
            logger.warning("Telegram notification to %s failed: %s", chat_id, e)
            return False
        return True

    def close(self) -> None:
        if self.client is not None:
            self.client.close()

    def _resolve_photo(self, ref: str) -> str:
        # "/uploads/<name>" is stored on the order; send the local file when we have it
        name = os.path.basename(ref)
        path = os.path.join(self.upload_dir, name)
        return path if name and os.path.isfile(path) else ref

    def new_order(self, order: Dict[str, Any], account: Optional[Dict[str, Any]], products: Iterable[Dict[str, Any]]) -> bool:
        by_id = {str(p["_id"]): p for p in products}
        return self._send(
            self.admin_chat_id,
            lambda: format_new_order(order, account, by_id),
            photo=order.get("payment_screenshot"),
            caption="Payment screenshot",
        )

    def status_changed(self, order: Dict[str, Any], account: Optional[Dict[str, Any]], status: str) -> bool:
        return self._send(
            (account or {}).get("telegram_id"),
            lambda: format_status_message(order["_id"], status),
        )

    def passport_requested(self, order: Dict[str, Any], account: Optional[Dict[str, Any]]) -> bool:
        return self._send(
            (account or {}).get("telegram_id"),
            lambda: format_passport_request(order["_id"]),
        )


def build_notifier() -> OrderNotifier:
    if not config.TELEGRAM_BOT_TOKEN:
        logger.info("TELEGRAM_BOT_TOKEN is not set; Telegram notifications are disabled")
        return OrderNotifier(admin_chat_id=config.ADMIN_TELEGRAM_CHAT_ID)
    client = TelegramClient(
        config.TELEGRAM_BOT_TOKEN,
        api_url=config.TELEGRAM_API_URL,
        timeout=config.TELEGRAM_TIMEOUT,
    )
    return OrderNotifier(client, admin_chat_id=config.ADMIN_TELEGRAM_CHAT_ID)
