import asyncio
import logging

import aiohttp
import redis.asyncio as redis
from aiohttp import web

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from cafeloyalty.api import BOT, create_app
from cafeloyalty.bot import router, set_commands
from cafeloyalty.config import Settings
from cafeloyalty.menu import CsvFeed, MenuCache
from cafeloyalty.notify import CardSink, Notifier
from cafeloyalty.orders import OrderWorkflow
from cafeloyalty.ratelimit import OrderRateLimiter
from cafeloyalty.store import LedgerStore


# -------------------------
# Logging
# -------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("willow")


# -------------------------
# Webhook registration
# -------------------------
def make_startup(settings: Settings):
    async def app_startup(app: web.Application):
        bot = app[BOT]
        if bot is None:
            logger.warning("BOT_TOKEN not set: running without Telegram bot")
            return
        if not settings.webhook_url:
            logger.warning("PUBLIC_HOST not set: webhook not registered")
            return

        logger.info("Startup: webhook url=%s", settings.webhook_url)
        await set_commands(bot)
        await bot.set_webhook(settings.webhook_url, secret_token=settings.webhook_secret or None)

        try:
            info = await bot.get_webhook_info()
            logger.info(
                "Webhook info: url=%s pending=%s last_error=%s",
                info.url,
                info.pending_update_count,
                info.last_error_message,
            )
        except Exception as e:
            logger.warning("get_webhook_info failed: %r", e)

    return app_startup


def make_cleanup(store: LedgerStore, session: aiohttp.ClientSession, r):
    async def app_cleanup(app: web.Application):
        bot = app[BOT]
        if bot is not None:
            await bot.session.close()
        if r is not None:
            await r.aclose()
        await session.close()
        await store.close()
        logger.info("Shutdown complete")

    return app_cleanup


async def main():
    settings = Settings.from_env()

    store = LedgerStore.from_url(settings.database_url)
    await store.create_schema()

    session = aiohttp.ClientSession()
    menu = MenuCache(CsvFeed(session, settings.sheets_csv_url, settings.menu_fetch_timeout), ttl=settings.menu_cache_ttl)
    if not settings.sheets_csv_url:
        logger.warning("SHEETS_CSV_URL not set: menu requests will fail")

    card_sink = None
    if settings.sheets_cards_webhook_url:
        card_sink = CardSink(session, settings.sheets_cards_webhook_url)

    bot = None
    if settings.bot_token:
        bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))

    notifier = Notifier(bot, settings.admin_channel_id, card_sink, tz=settings.shop_tz)
    workflow = OrderWorkflow(store, notifier, menu, tz=settings.shop_tz)

    dp = Dispatcher(store=store, workflow=workflow, settings=settings)
    dp.include_router(router)

    r = None
    rate_limiter = None
    if settings.redis_url and settings.order_rate_limit_seconds > 0:
        r = redis.from_url(settings.redis_url, decode_responses=True)
        await r.ping()
        rate_limiter = OrderRateLimiter(r, settings.order_rate_limit_seconds)
        logger.info("Order rate limit: one per %ss", settings.order_rate_limit_seconds)

    app = create_app(
        settings,
        store,
        menu,
        notifier,
        workflow=workflow,
        rate_limiter=rate_limiter,
        dispatcher=dp,
        bot=bot,
    )
    app.on_startup.append(make_startup(settings))
    app.on_cleanup.append(make_cleanup(store, session, r))

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", settings.port)
    await site.start()

    logger.info("Server running on 0.0.0.0:%s", settings.port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
