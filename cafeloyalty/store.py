"""Transactional persistence for users, orders and the stars ledger.

Every mutation that touches more than one row runs inside a single
`engine.begin()` block: it commits when the block exits normally and rolls
back on any exception, so an order is never recorded without its accrual.
Balance changes are relative UPDATEs, and debits are guarded by
`stars >= cost` in the same statement. The database serializes concurrent
writers, so two redemptions cannot both spend the same stars.
"""

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Collection, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import event, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from cafeloyalty.errors import (
    ConflictError,
    InternalError,
    InvalidTransition,
    NotEnoughStars,
    NotFoundError,
    ValidationError,
)
from cafeloyalty.ids import MAX_CARD_ATTEMPTS, allocate_card_number, new_token, random_card_number
from cafeloyalty.initdata import TelegramUser
from cafeloyalty.pricing import PricedLine
from cafeloyalty.schema import (
    DEFAULT_REWARDS,
    OrderStatus,
    metadata,
    order_items,
    orders,
    rewards,
    transactions,
    users,
)


logger = logging.getLogger(__name__)

TX_ACCRUAL = "accrual"
TX_REDEEM = "redeem"


# -------------------------
# Records
# -------------------------
@dataclass(frozen=True)
class UserRecord:
    telegram_id: int
    first_name: str
    last_name: Optional[str]
    username: Optional[str]
    language_code: str
    card_number: int
    stars: int
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "UserRecord":
        return cls(**row._mapping)

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(frozen=True)
class OrderRecord:
    id: str
    short_id: str
    user_id: int
    total_amount: int
    stars_added: int
    eta_minutes: int
    table_number: str
    payment_method: str
    due_at: datetime
    status: str = OrderStatus.PENDING.value
    notified: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "OrderRecord":
        return cls(**row._mapping)


@dataclass(frozen=True)
class OrderItemRecord:
    id: str
    order_id: str
    item_id: str
    quantity: int
    unit_price: int

    @classmethod
    def from_row(cls, row) -> "OrderItemRecord":
        return cls(**row._mapping)


@dataclass(frozen=True)
class TransactionRecord:
    id: str
    user_id: int
    type: str
    stars_change: int
    order_id: Optional[str]
    reward_key: Optional[str]
    description: str
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "TransactionRecord":
        return cls(**row._mapping)


@dataclass(frozen=True)
class RewardRecord:
    key: str
    title: str
    stars_cost: int

    @classmethod
    def from_row(cls, row) -> "RewardRecord":
        return cls(**row._mapping)


# -------------------------
# Store
# -------------------------
def _immediate_transactions(engine: AsyncEngine) -> None:
    """SQLite: take the write lock at BEGIN so concurrent writers queue on the busy timeout."""

    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class LedgerStore:
    def __init__(self, engine: AsyncEngine, draw_card: Callable[[], int] = random_card_number):
        self._engine = engine
        self._draw_card = draw_card

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "LedgerStore":
        engine = create_async_engine(url, pool_pre_ping=True)
        if engine.dialect.name == "sqlite":
            _immediate_transactions(engine)
        return cls(engine, **kwargs)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
            count = (await conn.execute(select(func.count()).select_from(rewards))).scalar_one()
            if count == 0:
                await conn.execute(rewards.insert(), DEFAULT_REWARDS)
                logger.info("Seeded %d default rewards", len(DEFAULT_REWARDS))

    async def close(self) -> None:
        await self._engine.dispose()

    # users

    async def get_user(self, telegram_id: int) -> Optional[UserRecord]:
        async with self._engine.connect() as conn:
            row = (await conn.execute(select(users).where(users.c.telegram_id == telegram_id))).first()
        return UserRecord.from_row(row) if row else None

    async def card_taken(self, card_number: int) -> bool:
        async with self._engine.connect() as conn:
            row = (await conn.execute(select(users.c.telegram_id).where(users.c.card_number == card_number))).first()
        return row is not None

    async def get_or_create_user(self, tg_user: TelegramUser) -> Tuple[UserRecord, bool]:
        for _ in range(MAX_CARD_ATTEMPTS):
            existing = await self.get_user(tg_user.id)
            if existing:
                return existing, False

            card = await allocate_card_number(self.card_taken, draw=self._draw_card)
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(users.insert().values(
                        telegram_id=tg_user.id,
                        first_name=tg_user.first_name,
                        last_name=tg_user.last_name,
                        username=tg_user.username,
                        language_code=tg_user.language_code or "en",
                        card_number=card,
                        stars=0,
                    ))
            except IntegrityError:
                # another request took this card or created this user first
                logger.info("User insert conflict (user=%s card=%s), retrying", tg_user.id, card)
                continue

            created = await self.get_user(tg_user.id)
            logger.info("New user %s with card %s", tg_user.id, card)
            return created, True

        raise InternalError("Authentication failed")

    async def find_user(self, by: str, ident: Any) -> UserRecord:
        try:
            if by == "card":
                cond = users.c.card_number == int(ident)
            elif by == "username":
                cond = users.c.username == str(ident).lstrip("@")
            elif by == "telegram_id":
                cond = users.c.telegram_id == int(ident)
            else:
                raise ValidationError("Invalid 'by' parameter")
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid {by} identifier") from None

        async with self._engine.connect() as conn:
            row = (await conn.execute(select(users).where(cond))).first()
        if row is None:
            raise NotFoundError("User not found")
        return UserRecord.from_row(row)

    # rewards

    async def get_reward(self, key: str) -> Optional[RewardRecord]:
        async with self._engine.connect() as conn:
            row = (await conn.execute(select(rewards).where(rewards.c.key == key))).first()
        return RewardRecord.from_row(row) if row else None

    async def list_rewards(self) -> List[RewardRecord]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(select(rewards).order_by(rewards.c.stars_cost, rewards.c.key))).all()
        return [RewardRecord.from_row(r) for r in rows]

    # ledger mutations

    async def create_order(self, order: OrderRecord, lines: Sequence[PricedLine]) -> UserRecord:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(orders.insert().values(
                    id=order.id,
                    short_id=order.short_id,
                    user_id=order.user_id,
                    total_amount=order.total_amount,
                    stars_added=order.stars_added,
                    eta_minutes=order.eta_minutes,
                    table_number=order.table_number,
                    payment_method=order.payment_method,
                    due_at=order.due_at,
                    status=order.status,
                    notified=False,
                ))
                if lines:
                    await conn.execute(order_items.insert(), [
                        {
                            "id": new_token(),
                            "order_id": order.id,
                            "item_id": line.id,
                            "quantity": line.quantity,
                            "unit_price": line.unit_price,
                        }
                        for line in lines
                    ])
                res = await conn.execute(
                    users.update()
                    .where(users.c.telegram_id == order.user_id)
                    .values(stars=users.c.stars + order.stars_added)
                )
                if res.rowcount != 1:
                    raise NotFoundError("User not found")
                await conn.execute(transactions.insert().values(
                    id=new_token(),
                    user_id=order.user_id,
                    type=TX_ACCRUAL,
                    stars_change=order.stars_added,
                    order_id=order.id,
                    description=f"Order {order.short_id}",
                ))
                row = (await conn.execute(select(users).where(users.c.telegram_id == order.user_id))).one()
        except SQLAlchemyError as e:
            logger.exception("Order %s rolled back", order.short_id)
            raise InternalError("Failed to create order") from e
        return UserRecord.from_row(row)

    async def redeem(self, telegram_id: int, reward_key: str) -> int:
        reward = await self.get_reward(reward_key)
        if reward is None:
            raise ValidationError("Invalid reward key")

        try:
            async with self._engine.begin() as conn:
                exists = (await conn.execute(
                    select(users.c.telegram_id).where(users.c.telegram_id == telegram_id)
                )).first()
                if exists is None:
                    raise NotFoundError("User not found")

                res = await conn.execute(
                    users.update()
                    .where(users.c.telegram_id == telegram_id, users.c.stars >= reward.stars_cost)
                    .values(stars=users.c.stars - reward.stars_cost)
                )
                if res.rowcount != 1:
                    raise NotEnoughStars()

                await conn.execute(transactions.insert().values(
                    id=new_token(),
                    user_id=telegram_id,
                    type=TX_REDEEM,
                    stars_change=-reward.stars_cost,
                    reward_key=reward.key,
                    description=f"Redeemed {reward.title}",
                ))
                new_total = (await conn.execute(
                    select(users.c.stars).where(users.c.telegram_id == telegram_id)
                )).scalar_one()
        except SQLAlchemyError as e:
            logger.exception("Redemption of %s by %s rolled back", reward_key, telegram_id)
            raise InternalError("Failed to redeem reward") from e

        logger.info("User %s redeemed %s for %d stars, balance %d", telegram_id, reward.key, reward.stars_cost, new_total)
        return new_total

    async def admin_accrue(self, user: UserRecord, stars: int, description: str) -> UserRecord:
        if stars <= 0:
            raise ValidationError("stars must be a positive integer")
        try:
            async with self._engine.begin() as conn:
                res = await conn.execute(
                    users.update()
                    .where(users.c.telegram_id == user.telegram_id)
                    .values(stars=users.c.stars + stars)
                )
                if res.rowcount != 1:
                    raise NotFoundError("User not found")
                await conn.execute(transactions.insert().values(
                    id=new_token(),
                    user_id=user.telegram_id,
                    type=TX_ACCRUAL,
                    stars_change=stars,
                    description=description,
                ))
                row = (await conn.execute(select(users).where(users.c.telegram_id == user.telegram_id))).one()
        except SQLAlchemyError as e:
            logger.exception("Admin accrual for %s rolled back", user.telegram_id)
            raise InternalError("Failed to accrue stars") from e
        return UserRecord.from_row(row)

    async def list_transactions(self, telegram_id: int) -> List[TransactionRecord]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                select(transactions)
                .where(transactions.c.user_id == telegram_id)
                .order_by(transactions.c.created_at)
            )).all()
        return [TransactionRecord.from_row(r) for r in rows]

    async def ledger_balance(self, telegram_id: int) -> int:
        async with self._engine.connect() as conn:
            total = (await conn.execute(
                select(func.coalesce(func.sum(transactions.c.stars_change), 0))
                .where(transactions.c.user_id == telegram_id)
            )).scalar_one()
        return int(total)

    # orders

    async def get_order(self, order_id: str) -> Optional[OrderRecord]:
        async with self._engine.connect() as conn:
            row = (await conn.execute(select(orders).where(orders.c.id == order_id))).first()
        return OrderRecord.from_row(row) if row else None

    async def get_order_items(self, order_id: str) -> List[OrderItemRecord]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                select(order_items).where(order_items.c.order_id == order_id).order_by(order_items.c.item_id)
            )).all()
        return [OrderItemRecord.from_row(r) for r in rows]

    async def transition(self, order_id: str, target: str, allowed: Collection[str]) -> OrderRecord:
        async with self._engine.begin() as conn:
            res = await conn.execute(
                orders.update()
                .where(orders.c.id == order_id, orders.c.status.in_(list(allowed)))
                .values(status=target)
            )
            row = (await conn.execute(select(orders).where(orders.c.id == order_id))).first()

        if row is None:
            raise NotFoundError("Order not found")
        order = OrderRecord.from_row(row)
        if res.rowcount != 1:
            raise InvalidTransition(order_id, order.status, target)
        return order

    async def shift_due(self, order_id: str, minutes: int, allowed: Collection[str]) -> OrderRecord:
        for _ in range(3):
            order = await self.get_order(order_id)
            if order is None:
                raise NotFoundError("Order not found")
            if order.status not in allowed:
                raise InvalidTransition(order_id, order.status, "delayed")

            new_due = order.due_at + timedelta(minutes=minutes)
            async with self._engine.begin() as conn:
                res = await conn.execute(
                    orders.update()
                    .where(
                        orders.c.id == order_id,
                        orders.c.status.in_(list(allowed)),
                        orders.c.due_at == order.due_at,
                    )
                    .values(due_at=new_due)
                )
            if res.rowcount == 1:
                return replace(order, due_at=new_due)
        raise ConflictError("Order changed concurrently, try again")

    async def overdue_candidates(self, now: datetime) -> List[OrderRecord]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                select(orders)
                .where(
                    orders.c.status == OrderStatus.PENDING.value,
                    orders.c.notified.is_(False),
                    orders.c.due_at <= now,
                )
                .order_by(orders.c.due_at)
            )).all()
        return [OrderRecord.from_row(r) for r in rows]

    async def mark_overdue(self, order_id: str) -> bool:
        async with self._engine.begin() as conn:
            res = await conn.execute(
                orders.update()
                .where(
                    orders.c.id == order_id,
                    orders.c.status == OrderStatus.PENDING.value,
                    orders.c.notified.is_(False),
                )
                .values(status=OrderStatus.OVERDUE.value, notified=True)
            )
        return res.rowcount == 1
