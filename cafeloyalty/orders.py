"""Order placement and the order status state machine.

    pending --ready--> ready
    pending --cancel--> canceled
    pending --sweep--> overdue --ready/cancel--> ready / canceled

`delay` moves `due_at` forward without touching the status. Status updates
are conditional on the current status, so two admins pressing buttons on the
same card cannot both win.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from cafeloyalty.cards import (
    ACTION_CANCEL,
    ACTION_DELAY,
    ACTION_READY,
    DELAY_MINUTES,
    OrderCard,
    action_reply,
    render_order_card,
)
from cafeloyalty.errors import MenuUnavailable, ValidationError
from cafeloyalty.ids import new_order_id
from cafeloyalty.menu import MenuCache
from cafeloyalty.notify import Notifier
from cafeloyalty.pricing import PricedLine, price_order, stars_for_amount
from cafeloyalty.schema import OrderStatus, utcnow
from cafeloyalty.store import LedgerStore, OrderRecord, UserRecord


logger = logging.getLogger(__name__)


ETA_CHOICES = (0, 10, 20)
TABLE_TAKEAWAY = "takeaway"
TABLE_RANGE = range(1, 11)
PAYMENT_METHODS = ("cash", "stars")

PENDING = OrderStatus.PENDING.value
READY = OrderStatus.READY.value
OVERDUE = OrderStatus.OVERDUE.value
CANCELED = OrderStatus.CANCELED.value

# target status -> statuses it may be reached from
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    READY: frozenset({PENDING, OVERDUE}),
    CANCELED: frozenset({PENDING, OVERDUE}),
    OVERDUE: frozenset({PENDING}),
}
DELAYABLE = frozenset({PENDING, OVERDUE})


def can_transition(current: str, target: str) -> bool:
    return current in TRANSITIONS.get(target, frozenset())


# -------------------------
# Request validation
# -------------------------
def _table_number(raw: Any) -> str:
    if raw == TABLE_TAKEAWAY:
        return TABLE_TAKEAWAY
    if isinstance(raw, bool):
        raise ValidationError("Invalid table number")
    try:
        n = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid table number") from None
    if n not in TABLE_RANGE:
        raise ValidationError("Invalid table number")
    return str(n)


@dataclass(frozen=True)
class OrderRequest:
    items: List[Any]
    eta_minutes: int
    table_number: str
    payment_method: str

    @classmethod
    def parse(cls, body: Dict[str, Any]) -> "OrderRequest":
        items = body.get("items")
        eta = body.get("eta_minutes")
        if not isinstance(items, list) or not items or eta is None:
            raise ValidationError("Missing required fields")
        if isinstance(eta, bool) or not isinstance(eta, int) or eta not in ETA_CHOICES:
            raise ValidationError("Invalid ETA")
        table_number = _table_number(body.get("table_number"))
        payment_method = body.get("payment_method")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method")
        return cls(items=items, eta_minutes=eta, table_number=table_number, payment_method=payment_method)


@dataclass(frozen=True)
class PlacedOrder:
    order: OrderRecord
    user: UserRecord
    lines: List[PricedLine]

    def to_json(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "order_id": self.order.id,
            "short_id": self.order.short_id,
            "due_at": self.order.due_at.isoformat(),
            "eta_minutes": self.order.eta_minutes,
            "total_amount": self.order.total_amount,
            "stars_added": self.order.stars_added,
            "new_stars": self.user.stars,
        }


# -------------------------
# Workflow
# -------------------------
class OrderWorkflow:
    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier,
        menu: MenuCache,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo = timezone.utc,
    ):
        self._store = store
        self._notifier = notifier
        self._menu = menu
        self._clock = clock
        self._tz = tz

    async def place(self, user: UserRecord, request: OrderRequest) -> PlacedOrder:
        snapshot = await self._menu.get()
        priced = price_order(request.items, snapshot)
        if priced.total_amount == 0:
            raise ValidationError("Invalid items or quantities")

        order_id, short_id = new_order_id()
        now = self._clock()
        order = OrderRecord(
            id=order_id,
            short_id=short_id,
            user_id=user.telegram_id,
            total_amount=priced.total_amount,
            stars_added=stars_for_amount(priced.total_amount),
            eta_minutes=request.eta_minutes,
            table_number=request.table_number,
            payment_method=request.payment_method,
            due_at=now + timedelta(minutes=request.eta_minutes),
            status=PENDING,
            notified=False,
            created_at=now,
        )
        updated = await self._store.create_order(order, priced.lines)
        logger.info("Order #%s by %s: %d RSD, +%d stars", short_id, user.telegram_id,
                    order.total_amount, order.stars_added)

        self._notifier.order_placed(order, updated, priced.lines, snapshot)
        return PlacedOrder(order=order, user=updated, lines=priced.lines)

    async def mark_ready(self, order_id: str) -> OrderRecord:
        order = await self._store.transition(order_id, READY, TRANSITIONS[READY])
        self._notifier.order_ready(order, await self._store.get_user(order.user_id))
        logger.info("Order #%s ready", order.short_id)
        return order

    async def cancel(self, order_id: str) -> OrderRecord:
        order = await self._store.transition(order_id, CANCELED, TRANSITIONS[CANCELED])
        self._notifier.order_canceled(order, await self._store.get_user(order.user_id))
        logger.info("Order #%s canceled", order.short_id)
        return order

    async def delay(self, order_id: str, minutes: int = DELAY_MINUTES) -> OrderRecord:
        if minutes <= 0:
            raise ValidationError("Delay must be positive")
        order = await self._store.shift_due(order_id, minutes, DELAYABLE)
        logger.info("Order #%s delayed %d min, due %s", order.short_id, minutes, order.due_at.isoformat())
        return order

    async def sweep_overdue(self, now: Optional[datetime] = None) -> List[OrderRecord]:
        now = now or self._clock()
        swept: List[OrderRecord] = []
        for order in await self._store.overdue_candidates(now):
            # another process may have swept it between the select and here
            if not await self._store.mark_overdue(order.id):
                continue
            order = replace(order, status=OVERDUE, notified=True)
            self._notifier.order_overdue(order)
            swept.append(order)
        if swept:
            logger.warning("Marked %d order(s) overdue", len(swept))
        return swept

    async def render_card(self, order: OrderRecord) -> OrderCard:
        items = await self._store.get_order_items(order.id)
        user = await self._store.get_user(order.user_id)
        try:
            snapshot = await self._menu.get()
        except MenuUnavailable:
            snapshot = None
        return render_order_card(order, items, user, snapshot, self._tz)

    async def apply_action(self, action: str, order_id: str) -> Tuple[OrderRecord, str]:
        if action == ACTION_READY:
            order = await self.mark_ready(order_id)
        elif action == ACTION_DELAY:
            order = await self.delay(order_id)
        elif action == ACTION_CANCEL:
            order = await self.cancel(order_id)
        else:
            raise ValidationError(f"Unknown order action {action!r}")
        return order, action_reply(action, order, self._tz)


async def run_sweeper(workflow: OrderWorkflow, interval: float) -> None:
    logger.info("Overdue sweeper started, every %ss", interval)
    while True:
        try:
            await workflow.sweep_overdue()
        except Exception:
            logger.exception("Overdue sweep failed")
        await asyncio.sleep(interval)
