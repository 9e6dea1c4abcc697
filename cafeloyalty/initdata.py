import logging
from dataclasses import dataclass
from typing import Any, Optional

from aiogram.utils.web_app import WebAppUser, check_webapp_signature, parse_webapp_init_data

from cafeloyalty.config import Settings
from cafeloyalty.errors import AuthError, ValidationError


logger = logging.getLogger(__name__)

TEST_INIT_DATA = "test"


@dataclass(frozen=True)
class TelegramUser:
    id: int
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: str = "en"

    @classmethod
    def from_webapp_user(cls, user: WebAppUser) -> "TelegramUser":
        return cls(
            id=user.id,
            first_name=user.first_name or "",
            last_name=user.last_name or None,
            username=user.username or None,
            language_code=user.language_code or "en",
        )


TEST_USER = TelegramUser(
    id=123456789,
    first_name="Test",
    last_name="User",
    username="testuser",
    language_code="en",
)


# -------------------------
# Signature
# -------------------------
def is_valid_init_data(init_data: str, bot_token: str) -> bool:
    if not bot_token or not init_data:
        return False
    return check_webapp_signature(bot_token, init_data)


# -------------------------
# Authentication
# -------------------------
def authenticate(init_data: Any, settings: Settings) -> TelegramUser:
    if not init_data or not isinstance(init_data, str):
        raise ValidationError("initData is required")

    if init_data == TEST_INIT_DATA and settings.allow_test_init_data:
        return TEST_USER

    if not is_valid_init_data(init_data, settings.bot_token):
        raise AuthError("Invalid initData")

    try:
        data = parse_webapp_init_data(init_data)
    except ValueError as e:
        logger.info("Signed initData could not be parsed: %s", e)
        raise ValidationError("initData user is malformed") from None
    if data.user is None:
        raise ValidationError("initData has no user")
    return TelegramUser.from_webapp_user(data.user)
