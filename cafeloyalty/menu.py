"""Menu feed parsing and the time-bounded menu cache.

The feed is the CSV export of the shop's spreadsheet. Column headers are the
Russian labels the staff use; they are matched case-insensitively.
"""

import io
import re
import csv
import time
import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from cafeloyalty.errors import MenuUnavailable


logger = logging.getLogger(__name__)


COL_CATEGORY = "категория"
COL_TITLE_EN = "английский"
COL_TITLE_RU = "русский"
COL_TITLE_SR = "сербский"
COL_VOLUME = "объем"
COL_PRICE = "стоимость (rsd)"
COL_INGREDIENTS = "состав"

_LEADING_INT = re.compile(r"\s*(\d+)")


class MenuFetchError(Exception):
    pass


@dataclass(frozen=True)
class MenuItem:
    id: str
    category: str
    title: Dict[str, str]
    volume: str
    price: int
    ingredients: str

    @property
    def name(self) -> str:
        return self.title.get("en") or "Unknown item"

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "title": dict(self.title),
            "volume": self.volume,
            "price": self.price,
            "ingredients": self.ingredients,
        }


@dataclass(frozen=True)
class MenuSnapshot:
    updated_at: datetime
    categories: List[str]
    items: List[MenuItem]
    by_id: Dict[str, MenuItem] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "by_id", {i.id: i for i in self.items})

    def to_json(self) -> Dict[str, Any]:
        return {
            "updated_at": self.updated_at.isoformat(),
            "categories": list(self.categories),
            "items": [i.to_json() for i in self.items],
        }


# -------------------------
# Parsing
# -------------------------
def item_fingerprint(category: str, title_en: str, volume: str) -> str:
    digest = hashlib.sha1(f"{category}|{title_en}|{volume}".encode("utf-8")).hexdigest()
    return "item-" + digest[:12]


def parse_price(raw: Optional[str]) -> int:
    m = _LEADING_INT.match(raw or "")
    return int(m.group(1)) if m else 0


def parse_menu_csv(csv_text: str, now: Optional[datetime] = None) -> MenuSnapshot:
    rows = [r for r in csv.reader(io.StringIO(csv_text)) if any(c.strip() for c in r)]
    if not rows:
        raise MenuFetchError("menu feed is empty")

    headers = [h.strip().lower() for h in rows[0]]
    items: List[MenuItem] = []
    for values in rows[1:]:
        row = {h: (values[i].strip() if i < len(values) else "") for i, h in enumerate(headers)}

        category = row.get(COL_CATEGORY, "")
        title_en = row.get(COL_TITLE_EN, "")
        volume = row.get(COL_VOLUME, "")
        items.append(MenuItem(
            id=item_fingerprint(category, title_en, volume),
            category=category,
            title={"en": title_en, "ru": row.get(COL_TITLE_RU, ""), "sr": row.get(COL_TITLE_SR, "")},
            volume=volume,
            price=parse_price(row.get(COL_PRICE)),
            ingredients=row.get(COL_INGREDIENTS, ""),
        ))

    categories = list(dict.fromkeys(i.category for i in items))
    return MenuSnapshot(
        updated_at=now or datetime.now(timezone.utc),
        categories=categories,
        items=items,
    )


# -------------------------
# Feed
# -------------------------
class CsvFeed:
    def __init__(self, session: aiohttp.ClientSession, url: str, timeout: float = 10):
        self._session = session
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __call__(self) -> str:
        if not self._url:
            raise MenuFetchError("SHEETS_CSV_URL not set")
        async with self._session.get(self._url, timeout=self._timeout) as resp:
            if resp.status != 200:
                raise MenuFetchError(f"Failed to fetch CSV: HTTP {resp.status}")
            return await resp.text(encoding="utf-8")


# -------------------------
# Cache
# -------------------------
class MenuCache:
    def __init__(
        self,
        fetch: Callable[[], Awaitable[str]],
        ttl: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock
        self._snapshot: Optional[MenuSnapshot] = None
        self._fetched_at: Optional[float] = None
        self.last_error: Optional[BaseException] = None

    @property
    def snapshot(self) -> Optional[MenuSnapshot]:
        return self._snapshot

    def is_fresh(self) -> bool:
        if self._snapshot is None or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self._ttl

    async def get(self) -> MenuSnapshot:
        if self.is_fresh():
            return self._snapshot

        try:
            csv_text = await self._fetch()
            snapshot = parse_menu_csv(csv_text)
        except (aiohttp.ClientError, asyncio.TimeoutError, MenuFetchError, UnicodeDecodeError) as e:
            self.last_error = e
            if self._snapshot is None:
                logger.error("Menu fetch failed and no cached menu: %r", e)
                raise MenuUnavailable() from e
            logger.warning("Menu fetch failed, serving stale menu from %s: %r",
                           self._snapshot.updated_at.isoformat(), e)
            return self._snapshot

        # snapshot and timestamp are replaced together; concurrent refreshes: last write wins
        self._snapshot, self._fetched_at = snapshot, self._clock()
        self.last_error = None
        logger.info("Menu refreshed: %d items in %d categories", len(snapshot.items), len(snapshot.categories))
        return snapshot
