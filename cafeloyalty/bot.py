import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from aiogram import Bot, F, Router
from aiogram.exceptions import TelegramBadRequest
from aiogram.filters import Command, CommandStart
from aiogram.types import (
    BotCommand,
    CallbackQuery,
    ErrorEvent,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
    WebAppInfo,
)

from cafeloyalty.cards import OrderCard, parse_callback_data
from cafeloyalty.config import Settings
from cafeloyalty.errors import ServiceError, ValidationError
from cafeloyalty.orders import OrderWorkflow
from cafeloyalty.pricing import admin_accrual
from cafeloyalty.store import LedgerStore, UserRecord


logger = logging.getLogger(__name__)

CMD_ADD_AMOUNT = "addamount"
CMD_ADD_STARS = "addstars"
ACCRUAL_USAGE = "Usage: /addamount <card|@username> <amount> or /addstars <card|@username> <stars>"

WELCOME_TEXT = (
    "☕ <b>Welcome to Willow!</b>\n\n"
    "Order ahead, collect ⭐ stars with every purchase and swap them for free drinks.\n"
    "Tap the button below to open the menu."
)


# -------------------------
# Router + error handler
# -------------------------
router = Router()

@router.error()
async def error_handler(event: ErrorEvent):
    logger.critical("Update handling error: %r", event.exception, exc_info=True)


async def set_commands(bot: Bot) -> None:
    await bot.set_my_commands([
        BotCommand(command="start", description="Open the menu"),
        BotCommand(command="mycard", description="Show my loyalty card"),
    ])


def is_admin_chat(settings: Settings, chat_id: Optional[int]) -> bool:
    """Staff actions are honoured only in the configured admin channel; none configured means none honoured."""
    return settings.admin_channel_id is not None and chat_id == settings.admin_channel_id


# -------------------------
# Texts and keyboards
# -------------------------
def webapp_keyboard(webapp_url: str) -> Optional[InlineKeyboardMarkup]:
    if not webapp_url:
        return None
    return InlineKeyboardMarkup(inline_keyboard=[[
        InlineKeyboardButton(text="☕ Open menu", web_app=WebAppInfo(url=webapp_url)),
    ]])


def card_text(user: Optional[UserRecord]) -> str:
    if user is None:
        return "You don't have a loyalty card yet. Open the menu with /start and it will be issued automatically."
    return (
        f"💳 Your card: <code>{user.card_number}</code>\n"
        f"⭐ Stars: <b>{user.stars}</b>"
    )


# -------------------------
# Admin channel accruals
# -------------------------
@dataclass(frozen=True)
class AccrualCommand:
    command: str
    by: str
    ident: str
    value: str


def parse_accrual_command(text: Optional[str]) -> Optional[AccrualCommand]:
    """`/addstars 1234 5` or `/addamount @alice 700`. None if it is another command."""
    parts = (text or "").split()
    if not parts or not parts[0].startswith("/"):
        return None
    command = parts[0][1:].split("@", 1)[0].lower()
    if command not in (CMD_ADD_AMOUNT, CMD_ADD_STARS):
        return None
    if len(parts) != 3:
        raise ValidationError(ACCRUAL_USAGE)

    target, value = parts[1], parts[2]
    if target.startswith("@") and len(target) > 1:
        return AccrualCommand(command=command, by="username", ident=target[1:], value=value)
    if target.isdigit():
        return AccrualCommand(command=command, by="card", ident=target, value=value)
    raise ValidationError(ACCRUAL_USAGE)


async def run_accrual_command(store: LedgerStore, text: Optional[str]) -> Optional[str]:
    try:
        cmd = parse_accrual_command(text)
        if cmd is None:
            return None
        if cmd.command == CMD_ADD_STARS:
            stars, description = admin_accrual(stars=cmd.value)
        else:
            stars, description = admin_accrual(amount=cmd.value)
        user = await store.find_user(cmd.by, cmd.ident)
        updated = await store.admin_accrue(user, stars, description)
    except ServiceError as e:
        return f"⚠️ {e.message}"

    logger.info("Channel accrual: +%d stars to card %s", stars, updated.card_number)
    return f"✅ +{stars} ⭐ to card <code>{updated.card_number}</code>. Balance: <b>{updated.stars}</b>"


# -------------------------
# Order buttons
# -------------------------
async def run_order_action(workflow: OrderWorkflow, data: Optional[str]) -> Tuple[Optional[OrderCard], str]:
    parsed = parse_callback_data(data)
    if parsed is None:
        return None, "Unknown action"
    action, order_id = parsed
    try:
        order, reply = await workflow.apply_action(action, order_id)
    except ServiceError as e:
        return None, e.message
    return await workflow.render_card(order), reply


# -------------------------
# Handlers
# -------------------------
@router.message(CommandStart())
async def start(message: Message, settings: Settings):
    await message.answer(WELCOME_TEXT, reply_markup=webapp_keyboard(settings.webapp_url))


@router.message(Command("mycard"))
async def mycard(message: Message, store: LedgerStore):
    if message.from_user is None:
        return
    await message.answer(card_text(await store.get_user(message.from_user.id)))


@router.channel_post(Command(CMD_ADD_AMOUNT, CMD_ADD_STARS))
async def channel_accrual(message: Message, store: LedgerStore, settings: Settings):
    if not is_admin_chat(settings, message.chat.id):
        logger.warning("Ignoring accrual command from chat %s", message.chat.id)
        return
    reply = await run_accrual_command(store, message.text)
    if reply:
        await message.answer(reply)


@router.callback_query(F.data.startswith("order:"))
async def order_action(query: CallbackQuery, workflow: OrderWorkflow, settings: Settings):
    chat_id = query.message.chat.id if query.message else None
    if not is_admin_chat(settings, chat_id):
        logger.warning("Ignoring order button from chat %s", chat_id)
        await query.answer("Not allowed", show_alert=True)
        return

    card, reply = await run_order_action(workflow, query.data)
    if card is None:
        await query.answer(reply, show_alert=True)
        return

    if isinstance(query.message, Message):
        try:
            await query.message.edit_text(card.text, reply_markup=card.reply_markup)
        except TelegramBadRequest as e:
            logger.warning("Could not update order card: %s", e)
    await query.answer(reply)
