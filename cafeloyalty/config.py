import os
import logging
from dataclasses import dataclass
from datetime import timezone, timedelta
from typing import Optional, Mapping


logger = logging.getLogger(__name__)


DEFAULT_CORS_ORIGIN = "https://raz-ar.github.io"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///willow.db"


class ConfigurationError(Exception):
    """Raised when an environment value cannot be used."""


def _env(environ: Mapping[str, str], key: str, default: str = "") -> str:
    return (environ.get(key) or default).strip()


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = _env(environ, key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None


def _env_flag(environ: Mapping[str, str], key: str) -> bool:
    return _env(environ, key).lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    bot_token: str = ""
    sheets_csv_url: str = ""
    admin_channel_id: Optional[int] = None
    admin_bearer: str = ""
    menu_cache_ttl: int = 60
    menu_fetch_timeout: int = 10
    cors_origin: str = DEFAULT_CORS_ORIGIN
    database_url: str = DEFAULT_DATABASE_URL
    redis_url: str = ""
    order_rate_limit_seconds: int = 0
    webhook_secret: str = ""
    public_host: str = ""
    webapp_url: str = ""
    sheets_cards_webhook_url: str = ""
    overdue_sweep_seconds: int = 60
    shop_utc_offset_hours: int = 1
    allow_test_init_data: bool = False
    port: int = 10000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        admin_channel = _env(env, "ADMIN_CHANNEL_ID")
        try:
            admin_channel_id = int(admin_channel) if admin_channel else None
        except ValueError:
            raise ConfigurationError(f"ADMIN_CHANNEL_ID must be numeric, got {admin_channel!r}") from None

        settings = cls(
            bot_token=_env(env, "BOT_TOKEN"),
            sheets_csv_url=_env(env, "SHEETS_CSV_URL"),
            admin_channel_id=admin_channel_id,
            admin_bearer=_env(env, "ADMIN_BEARER"),
            menu_cache_ttl=_env_int(env, "MENU_CACHE_TTL", 60),
            menu_fetch_timeout=_env_int(env, "MENU_FETCH_TIMEOUT", 10),
            cors_origin=_env(env, "CORS_ORIGIN", DEFAULT_CORS_ORIGIN),
            database_url=_env(env, "DATABASE_URL", DEFAULT_DATABASE_URL),
            redis_url=_env(env, "REDIS_URL"),
            order_rate_limit_seconds=_env_int(env, "ORDER_RATE_LIMIT_SECONDS", 0),
            webhook_secret=_env(env, "WEBHOOK_SECRET"),
            public_host=_env(env, "PUBLIC_HOST"),
            webapp_url=_env(env, "WEBAPP_URL"),
            sheets_cards_webhook_url=_env(env, "SHEETS_CARDS_WEBHOOK_URL"),
            overdue_sweep_seconds=_env_int(env, "OVERDUE_SWEEP_SECONDS", 60),
            shop_utc_offset_hours=_env_int(env, "SHOP_UTC_OFFSET", 1),
            allow_test_init_data=_env_flag(env, "ALLOW_TEST_INITDATA"),
            port=_env_int(env, "PORT", 10000),
        )

        if settings.allow_test_init_data:
            logger.warning("ALLOW_TEST_INITDATA is on: initData 'test' bypasses signature checks")
        if not settings.bot_token and not settings.allow_test_init_data:
            logger.warning("BOT_TOKEN not set: every initData check will fail")
        return settings

    @property
    def shop_tz(self) -> timezone:
        return timezone(timedelta(hours=self.shop_utc_offset_hours))

    @property
    def webhook_url(self) -> str:
        if not self.public_host:
            return ""
        return f"https://{self.public_host}/webhook"
