"""Outbound messages: admin channel, customer DMs and the cards sheet.

Sends are fire-and-forget. Each one runs as its own task; a failure is
logged and never reaches the request that triggered it.
"""

import asyncio
import logging
from datetime import timezone, tzinfo
from typing import Any, Awaitable, Optional, Sequence, Set

import aiohttp
from aiogram import Bot

from cafeloyalty.cards import (
    CANCELED_TEXTS,
    READY_TEXTS,
    localized,
    render_customer_receipt,
    render_order_card,
    render_overdue_alert,
)
from cafeloyalty.menu import MenuSnapshot
from cafeloyalty.store import OrderItemRecord, OrderRecord, UserRecord


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class CardSink:
    """Posts newly issued loyalty cards to the spreadsheet webhook."""

    def __init__(self, session: aiohttp.ClientSession, url: str, timeout: float = 10):
        self._session = session
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def register(self, user: UserRecord) -> None:
        payload = {
            "id": user.telegram_id,
            "card": user.card_number,
            "name": f"{user.first_name} {user.last_name or ''}".strip(),
            "telegram": user.username or user.telegram_id,
        }
        async with self._session.post(self._url, json=payload, timeout=self._timeout) as resp:
            if resp.status >= 400:
                raise NotificationError(f"cards webhook answered HTTP {resp.status}")
        logger.info("Card %s added to sheet", user.card_number)


class Notifier:
    def __init__(
        self,
        bot: Optional[Bot],
        admin_chat_id: Optional[int] = None,
        card_sink: Optional[CardSink] = None,
        tz: tzinfo = timezone.utc,
    ):
        self._bot = bot
        self._admin_chat_id = admin_chat_id
        self._card_sink = card_sink
        self._tz = tz
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------
    # Task plumbing
    # -------------------------
    def _fire(self, coro: Awaitable[Any], what: str) -> None:
        task = asyncio.ensure_future(self._guard(coro, what))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Awaitable[Any], what: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Notification failed: %s", what)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _send(self, chat_id: Optional[int], text: str, what: str, **kwargs) -> None:
        if self._bot is None or not chat_id:
            logger.info("Skipping %s: bot or chat not configured", what)
            return
        self._fire(self._bot.send_message(chat_id=chat_id, text=text, **kwargs), what)

    # -------------------------
    # Events
    # -------------------------
    def order_placed(self, order: OrderRecord, user: UserRecord, lines: Sequence,
                     snapshot: Optional[MenuSnapshot]) -> None:
        items = [
            OrderItemRecord(id="", order_id=order.id, item_id=l.id, quantity=l.quantity, unit_price=l.unit_price)
            for l in lines
        ]
        card = render_order_card(order, items, user, snapshot, self._tz)
        self._send(self._admin_chat_id, card.text, f"admin card #{order.short_id}", reply_markup=card.reply_markup)
        self._send(user.telegram_id, render_customer_receipt(order, lines), f"receipt #{order.short_id}")

    def order_ready(self, order: OrderRecord, user: Optional[UserRecord]) -> None:
        lang = user.language_code if user else None
        self._send(order.user_id, localized(READY_TEXTS, lang), f"ready DM #{order.short_id}")

    def order_canceled(self, order: OrderRecord, user: Optional[UserRecord]) -> None:
        lang = user.language_code if user else None
        self._send(order.user_id, localized(CANCELED_TEXTS, lang), f"cancel DM #{order.short_id}")

    def order_overdue(self, order: OrderRecord) -> None:
        self._send(self._admin_chat_id, render_overdue_alert(order, self._tz), f"overdue alert #{order.short_id}")

    def card_registered(self, user: UserRecord) -> None:
        if self._card_sink is None:
            logger.info("SHEETS_CARDS_WEBHOOK_URL not set, card %s not exported", user.card_number)
            return
        self._fire(self._card_sink.register(user), f"card export {user.card_number}")
