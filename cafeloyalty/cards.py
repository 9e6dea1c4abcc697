from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Dict, Optional, Sequence, Tuple

from aiogram import html
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from cafeloyalty.menu import MenuSnapshot
from cafeloyalty.pricing import stars_for_amount
from cafeloyalty.schema import OrderStatus


ACTION_READY = "ready"
ACTION_DELAY = "delay10"
ACTION_CANCEL = "cancel"
ORDER_ACTIONS = (ACTION_READY, ACTION_DELAY, ACTION_CANCEL)
DELAY_MINUTES = 10

ACTIVE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.OVERDUE.value)


@dataclass(frozen=True)
class OrderCard:
    text: str
    reply_markup: InlineKeyboardMarkup


# -------------------------
# Callback data
# -------------------------
def callback_data(action: str, order_id: str) -> str:
    return f"order:{action}:{order_id}"


def parse_callback_data(data: Optional[str]) -> Optional[Tuple[str, str]]:
    parts = (data or "").split(":", 2)
    if len(parts) != 3 or parts[0] != "order" or parts[1] not in ORDER_ACTIONS or not parts[2]:
        return None
    return parts[1], parts[2]


# -------------------------
# Formatting helpers
# -------------------------
def fmt_time(dt: datetime, tz: tzinfo = timezone.utc) -> str:
    return dt.astimezone(tz).strftime("%H:%M")


def eta_text(minutes: int) -> str:
    return "Now" if minutes == 0 else f"{minutes} min"


def table_text(table_number: str) -> str:
    return "Takeaway" if table_number == "takeaway" else f"Table {table_number}"


def payment_text(payment_method: str, total_amount: int) -> str:
    if payment_method == "stars":
        return f"Stars ({stars_for_amount(total_amount)} ⭐)"
    return "Cash"


def _item_title(item_id: str, snapshot: Optional[MenuSnapshot]) -> str:
    if snapshot is None:
        return "Unknown item"
    item = snapshot.by_id.get(item_id)
    return item.name if item else "Unknown item"


def _keyboard(order) -> InlineKeyboardMarkup:
    if order.status not in ACTIVE_STATUSES:
        return InlineKeyboardMarkup(inline_keyboard=[])
    return InlineKeyboardMarkup(inline_keyboard=[[
        InlineKeyboardButton(text="✅ Ready", callback_data=callback_data(ACTION_READY, order.id)),
        InlineKeyboardButton(text=f"➕ {DELAY_MINUTES} min", callback_data=callback_data(ACTION_DELAY, order.id)),
        InlineKeyboardButton(text="⛔️ Cancel", callback_data=callback_data(ACTION_CANCEL, order.id)),
    ]])


# -------------------------
# Admin surface
# -------------------------
def render_order_card(order, items: Sequence, user, snapshot: Optional[MenuSnapshot],
                      tz: tzinfo = timezone.utc) -> OrderCard:
    """Admin summary of an order. Reads only; item names come from the menu."""
    if user is not None:
        handle = f"@{html.quote(user.username)}" if user.username else html.quote(user.first_name or "guest")
        client = f"{handle} (ID: <code>{user.telegram_id}</code>, Card: <code>{user.card_number}</code>)"
    else:
        client = f"ID: <code>{order.user_id}</code>"

    lines = [
        f"- {html.quote(_item_title(i.item_id, snapshot))} ×{i.quantity} - {i.unit_price * i.quantity} RSD"
        for i in items
    ]

    status = f"Status: <b>{order.status.upper()}</b>"
    if order.status in ACTIVE_STATUSES:
        status += f" (Due: {fmt_time(order.due_at, tz)})"

    text = (
        f"🔔 <b>Order #{order.short_id}</b> · ETA {eta_text(order.eta_minutes)}\n"
        f"<b>Client</b>: {client}\n"
        f"<b>Location</b>: {table_text(order.table_number)} · "
        f"<b>Payment</b>: {payment_text(order.payment_method, order.total_amount)}\n"
        f"<b>Items</b>:\n" + ("\n".join(lines) or "-") + "\n"
        f"<b>Total</b>: {order.total_amount} RSD → +{order.stars_added}⭐\n"
        f"---\n"
        f"{status}"
    )
    return OrderCard(text=text, reply_markup=_keyboard(order))


def render_overdue_alert(order, tz: tzinfo = timezone.utc) -> str:
    return f"❗️ Overdue: Order #{order.short_id} was due at {fmt_time(order.due_at, tz)}."


def action_reply(action: str, order, tz: tzinfo = timezone.utc) -> str:
    if action == ACTION_READY:
        return f"✅ Order {order.short_id} marked as Ready."
    if action == ACTION_DELAY:
        return f"➕ Order {order.short_id} delayed by {DELAY_MINUTES} minutes. New ETA: {fmt_time(order.due_at, tz)}"
    return f"⛔️ Order {order.short_id} has been canceled."


# -------------------------
# Customer surface
# -------------------------
READY_TEXTS: Dict[str, str] = {
    "en": "Your order is ready for pickup!",
    "ru": "Ваш заказ готов к выдаче!",
    "sr": "Vaša narudžba je spremna za preuzimanje!",
}

CANCELED_TEXTS: Dict[str, str] = {
    "en": "Unfortunately, your order has been canceled.",
    "ru": "К сожалению, ваш заказ был отменен.",
    "sr": "Nažalost, vaša narudžba je otkazana.",
}


def localized(texts: Dict[str, str], language_code: Optional[str]) -> str:
    return texts.get(language_code or "en", texts["en"])


def render_customer_receipt(order, lines: Sequence) -> str:
    items = "\n".join(
        f"• {html.quote(l.name)} ×{l.quantity} - {l.unit_price * l.quantity} RSD" for l in lines
    )
    return (
        f"☕ <b>Thank you for your order!</b>\n\n"
        f"🎫 <b>Order #{order.short_id}</b>\n\n"
        f"{items}\n\n"
        f"📍 {table_text(order.table_number)}\n"
        f"⏰ Ready in: {eta_text(order.eta_minutes)}\n"
        f"💳 Payment: {payment_text(order.payment_method, order.total_amount)}\n\n"
        f"💰 Total: <b>{order.total_amount} RSD</b>\n"
        f"⭐ Stars earned: +{order.stars_added}"
    )
