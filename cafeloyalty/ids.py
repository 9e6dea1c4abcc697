import uuid
import random
import logging
from typing import Awaitable, Callable, Tuple

from cafeloyalty.errors import InternalError


logger = logging.getLogger(__name__)

CARD_MIN = 1000
CARD_MAX = 9999
MAX_CARD_ATTEMPTS = 50


def random_card_number() -> int:
    return random.randint(CARD_MIN, CARD_MAX)


async def allocate_card_number(
    is_taken: Callable[[int], Awaitable[bool]],
    draw: Callable[[], int] = random_card_number,
    attempts: int = MAX_CARD_ATTEMPTS,
) -> int:
    for _ in range(attempts):
        card = draw()
        if not await is_taken(card):
            return card
        logger.debug("Card %s already assigned, drawing again", card)
    raise InternalError("Could not allocate a card number")


def new_order_id() -> Tuple[str, str]:
    order_id = str(uuid.uuid4())
    return order_id, short_code(order_id)


def short_code(order_id: str) -> str:
    return order_id.split("-", 1)[0].upper()


def new_token() -> str:
    return str(uuid.uuid4())
