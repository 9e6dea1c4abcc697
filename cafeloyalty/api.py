import hmac
import asyncio
import logging
import contextlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web
from aiogram import Bot, Dispatcher
from aiogram.types import Update

from cafeloyalty.config import Settings
from cafeloyalty.errors import (
    InternalError,
    MenuUnavailable,
    ServiceError,
    Unauthorized,
    ValidationError,
)
from cafeloyalty.initdata import authenticate
from cafeloyalty.menu import MenuCache
from cafeloyalty.notify import Notifier
from cafeloyalty.orders import OrderRequest, OrderWorkflow, run_sweeper
from cafeloyalty.pricing import admin_accrual
from cafeloyalty.ratelimit import OrderRateLimiter
from cafeloyalty.store import LedgerStore


logger = logging.getLogger(__name__)


SETTINGS = web.AppKey("settings", Settings)
STORE = web.AppKey("store", LedgerStore)
MENU = web.AppKey("menu", MenuCache)
NOTIFIER = web.AppKey("notifier", Notifier)
WORKFLOW = web.AppKey("workflow", OrderWorkflow)
RATE_LIMITER = web.AppKey("rate_limiter", Optional[OrderRateLimiter])
DISPATCHER = web.AppKey("dispatcher", Optional[Dispatcher])
BOT = web.AppKey("bot", Optional[Bot])

ALLOWED_METHODS = "GET, POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization"


# -------------------------
# Middlewares
# -------------------------
def cors_headers(origin: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        "Vary": "Origin",
    }


@web.middleware
async def cors_middleware(request: web.Request, handler):
    headers = cors_headers(request.app[SETTINGS].cors_origin)

    if request.method == "OPTIONS":
        is_preflight = (
            request.headers.get("Origin") is not None
            and request.headers.get("Access-Control-Request-Method") is not None
        )
        if is_preflight:
            return web.Response(status=204, headers=headers)
        return web.Response(status=204, headers={"Allow": ALLOWED_METHODS})

    try:
        resp = await handler(request)
    except web.HTTPException as e:
        e.headers.update(headers)
        raise
    resp.headers.update(headers)
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ServiceError as e:
        if e.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e.message)
        return web.json_response({"error": e.message}, status=e.status)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response({"error": "Internal server error"}, status=500)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    return body


# -------------------------
# Handlers
# -------------------------
async def get_menu(request: web.Request) -> web.Response:
    menu = request.app[MENU]
    try:
        snapshot = await menu.get()
    except MenuUnavailable:
        raise InternalError("Could not fetch menu") from None
    ttl = request.app[SETTINGS].menu_cache_ttl
    return web.json_response(snapshot.to_json(), headers={"Cache-Control": f"public, max-age={ttl}"})


async def auth_telegram(request: web.Request) -> web.Response:
    body = await _json_body(request)
    tg_user = authenticate(body.get("initData"), request.app[SETTINGS])

    user, created = await request.app[STORE].get_or_create_user(tg_user)
    if created:
        request.app[NOTIFIER].card_registered(user)
    return web.json_response(user.to_json())


async def create_order(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if not body.get("initData"):
        raise ValidationError("Missing required fields")
    order_request = OrderRequest.parse(body)
    tg_user = authenticate(body["initData"], request.app[SETTINGS])

    limiter = request.app[RATE_LIMITER]
    if limiter is not None:
        await limiter.check(tg_user.id)

    try:
        user, created = await request.app[STORE].get_or_create_user(tg_user)
        if created:
            request.app[NOTIFIER].card_registered(user)
        placed = await request.app[WORKFLOW].place(user, order_request)
    except Exception:
        # only stored orders hold the rate limit slot
        if limiter is not None:
            await limiter.release(tg_user.id)
        raise
    return web.json_response(placed.to_json())


async def redeem(request: web.Request) -> web.Response:
    body = await _json_body(request)
    telegram_id, reward_key = body.get("telegram_id"), body.get("rewardKey")
    if not telegram_id or not reward_key or not isinstance(reward_key, str):
        raise ValidationError("Missing required fields")
    try:
        telegram_id = int(telegram_id)
    except (TypeError, ValueError):
        raise ValidationError("Invalid telegram_id") from None

    new_total = await request.app[STORE].redeem(telegram_id, reward_key)
    return web.json_response({"ok": True, "new_total": new_total})


def _check_bearer(request: web.Request) -> None:
    secret = request.app[SETTINGS].admin_bearer
    supplied = request.headers.get("Authorization", "")
    if not secret or not hmac.compare_digest(supplied.encode(), f"Bearer {secret}".encode()):
        raise Unauthorized()


async def admin_accrue(request: web.Request) -> web.Response:
    _check_bearer(request)
    body = await _json_body(request)
    by, ident = body.get("by"), body.get("id")
    if not by or ident in (None, ""):
        raise ValidationError("Missing params")
    stars, description = admin_accrual(amount=body.get("amount"), stars=body.get("stars"))

    store = request.app[STORE]
    user = await store.find_user(by, ident)
    updated = await store.admin_accrue(user, stars, description)
    logger.info("Admin accrual: +%d stars to %s (%s)", stars, updated.telegram_id, description)
    return web.json_response({"ok": True, "user": updated.to_json()})


async def list_rewards(request: web.Request) -> web.Response:
    rewards = await request.app[STORE].list_rewards()
    return web.json_response({
        "rewards": [{"key": r.key, "title": r.title, "stars_cost": r.stars_cost} for r in rewards],
    })


async def telegram_webhook(request: web.Request) -> web.Response:
    secret = request.app[SETTINGS].webhook_secret
    if secret and request.headers.get("X-Telegram-Bot-Api-Secret-Token") != secret:
        raise Unauthorized()

    dp, bot = request.app[DISPATCHER], request.app[BOT]
    if dp is None or bot is None:
        logger.warning("Webhook update received but bot is not configured")
        return web.Response(text="OK")

    try:
        update = Update.model_validate(await request.json(), context={"bot": bot})
        await dp.feed_update(bot, update)
    except Exception:
        logger.exception("Webhook update failed")
        return web.Response(status=500, text="Error")
    return web.Response(text="OK")


async def healthcheck(_: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})


# -------------------------
# App
# -------------------------
async def _sweeper_ctx(app: web.Application):
    task = asyncio.create_task(run_sweeper(app[WORKFLOW], app[SETTINGS].overdue_sweep_seconds))
    yield
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def _drain_notifications(app: web.Application) -> None:
    await app[NOTIFIER].drain()


def create_app(
    settings: Settings,
    store: LedgerStore,
    menu: MenuCache,
    notifier: Notifier,
    workflow: Optional[OrderWorkflow] = None,
    rate_limiter: Optional[OrderRateLimiter] = None,
    dispatcher: Optional[Dispatcher] = None,
    bot: Optional[Bot] = None,
) -> web.Application:
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[SETTINGS] = settings
    app[STORE] = store
    app[MENU] = menu
    app[NOTIFIER] = notifier
    app[WORKFLOW] = workflow or OrderWorkflow(store, notifier, menu, tz=settings.shop_tz)
    app[RATE_LIMITER] = rate_limiter
    app[DISPATCHER] = dispatcher
    app[BOT] = bot

    app.router.add_get("/api/menu", get_menu)
    app.router.add_post("/api/auth/telegram", auth_telegram)
    app.router.add_post("/api/order", create_order)
    app.router.add_post("/api/redeem", redeem)
    app.router.add_post("/api/admin/accrue", admin_accrue)
    app.router.add_get("/api/rewards", list_rewards)
    app.router.add_post("/webhook", telegram_webhook)
    app.router.add_get("/health", healthcheck)

    if settings.overdue_sweep_seconds > 0:
        app.cleanup_ctx.append(_sweeper_ctx)
    app.on_shutdown.append(_drain_notifications)
    return app
