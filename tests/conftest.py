"""Shared pytest fixtures: a throwaway SQLite ledger, a fake bot and a fake menu feed."""

import hmac
import json
import hashlib
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import pytest

from cafeloyalty.config import Settings
from cafeloyalty.initdata import TelegramUser
from cafeloyalty.menu import MenuCache, item_fingerprint
from cafeloyalty.notify import Notifier
from cafeloyalty.orders import OrderWorkflow
from cafeloyalty.store import LedgerStore


BOT_TOKEN = "123456:TEST-TOKEN"
ADMIN_CHAT_ID = -1001234567890
ADMIN_BEARER = "s3cret"

MENU_CSV = """Категория,Английский,Русский,Сербский,Объем,Стоимость (RSD),Состав
Coffee,Espresso,Эспрессо,Espreso,30 ml,200,coffee
Coffee,Cappuccino,Капучино,Kapućino,250 ml,300 RSD,"coffee, milk"
Desserts,Cheesecake,Чизкейк,Čizkejk,,400,
"""

ESPRESSO = item_fingerprint("Coffee", "Espresso", "30 ml")
CAPPUCCINO = item_fingerprint("Coffee", "Cappuccino", "250 ml")
CHEESECAKE = item_fingerprint("Desserts", "Cheesecake", "")


@dataclass
class SentMessage:
    chat_id: int
    text: str
    kwargs: Dict[str, Any] = field(default_factory=dict)


class FakeBot:
    """Records outgoing messages instead of calling Telegram."""

    def __init__(self, fail: bool = False):
        self.sent: List[SentMessage] = []
        self.fail = fail

    async def send_message(self, chat_id: int, text: str, **kwargs):
        if self.fail:
            raise RuntimeError("telegram is down")
        self.sent.append(SentMessage(chat_id, text, kwargs))

    def to(self, chat_id: int) -> List[SentMessage]:
        return [m for m in self.sent if m.chat_id == chat_id]


class FakeFeed:
    def __init__(self, text: str = MENU_CSV):
        self.text = text
        self.error: Optional[BaseException] = None
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """The subset of redis.asyncio.Redis used by the rate limiter; keys never expire."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, int] = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.expiry.pop(key, None)
                removed += 1
        return removed


def sign_init_data(fields: List[Tuple[str, str]], token: str = BOT_TOKEN) -> str:
    """Urlencode fields with the hash Telegram would append for this bot token."""
    check_string = "\n".join(f"{k}={v}" for k, v in sorted(fields))
    secret_key = hmac.new(b"WebAppData", token.encode(), hashlib.sha256).digest()
    digest = hmac.new(secret_key, check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode(fields + [("hash", digest)])


def make_init_data(user: Dict[str, Any], token: str = BOT_TOKEN) -> str:
    fields = [
        ("query_id", "AAHdF6IQAAAAAN0XohDhrOrc"),
        ("user", json.dumps(user)),
        ("auth_date", "1700000000"),
    ]
    return sign_init_data(fields, token)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        bot_token=BOT_TOKEN,
        admin_channel_id=ADMIN_CHAT_ID,
        admin_bearer=ADMIN_BEARER,
        overdue_sweep_seconds=0,
        shop_utc_offset_hours=0,
    )


@pytest.fixture
async def store(tmp_path):
    s = LedgerStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await s.create_schema()
    yield s
    await s.close()


@pytest.fixture
def alice() -> TelegramUser:
    return TelegramUser(id=42, first_name="Alice", username="alice", language_code="ru")


@pytest.fixture
def bot() -> FakeBot:
    return FakeBot()


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def menu(feed, clock) -> MenuCache:
    return MenuCache(feed, ttl=60, clock=clock)


@pytest.fixture
def notifier(bot) -> Notifier:
    return Notifier(bot, admin_chat_id=ADMIN_CHAT_ID, tz=timezone.utc)


@pytest.fixture
def workflow(store, notifier, menu) -> OrderWorkflow:
    return OrderWorkflow(store, notifier, menu)
