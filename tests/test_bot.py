"""Tests for the bot's command helpers and order buttons."""

from dataclasses import replace

import pytest

from cafeloyalty.bot import (
    card_text,
    is_admin_chat,
    parse_accrual_command,
    run_accrual_command,
    run_order_action,
    webapp_keyboard,
)
from cafeloyalty.cards import callback_data, parse_callback_data
from cafeloyalty.errors import ValidationError
from cafeloyalty.orders import OrderRequest

from conftest import ADMIN_CHAT_ID, ESPRESSO


class TestAccrualCommand:
    def test_parse_card(self):
        cmd = parse_accrual_command("/addstars 1234 5")
        assert (cmd.command, cmd.by, cmd.ident, cmd.value) == ("addstars", "card", "1234", "5")

    def test_parse_username_with_bot_mention(self):
        cmd = parse_accrual_command("/addamount@willow_bot @alice 700")
        assert (cmd.command, cmd.by, cmd.ident, cmd.value) == ("addamount", "username", "alice", "700")

    def test_other_text_is_ignored(self):
        assert parse_accrual_command("/start") is None
        assert parse_accrual_command("hello") is None
        assert parse_accrual_command(None) is None

    def test_bad_arguments(self):
        with pytest.raises(ValidationError):
            parse_accrual_command("/addstars 1234")
        with pytest.raises(ValidationError):
            parse_accrual_command("/addstars alice 5")

    async def test_run_by_card(self, store, alice):
        user, _ = await store.get_or_create_user(alice)
        reply = await run_accrual_command(store, f"/addstars {user.card_number} 5")
        assert reply.startswith("✅ +5 ⭐")
        assert (await store.get_user(alice.id)).stars == 5

    async def test_run_by_amount(self, store, alice):
        await store.get_or_create_user(alice)
        await run_accrual_command(store, "/addamount @alice 1000")
        txs = await store.list_transactions(alice.id)
        assert [(t.stars_change, t.description) for t in txs] == [(3, "Admin amount accrual: 1000 RSD")]

    async def test_errors_become_replies(self, store):
        assert await run_accrual_command(store, "/addstars 1234 5") == "⚠️ User not found"
        assert (await run_accrual_command(store, "/addstars 1234 zero")).startswith("⚠️")


class TestOrderButtons:
    def test_callback_data_round_trip(self):
        assert parse_callback_data(callback_data("ready", "abc-123")) == ("ready", "abc-123")

    @pytest.mark.parametrize("data", [None, "", "order:ready", "order:explode:abc", "cafe:ready:abc", "order:ready:"])
    def test_bad_callback_data(self, data):
        assert parse_callback_data(data) is None

    async def test_button_press_updates_card(self, store, workflow, alice):
        user, _ = await store.get_or_create_user(alice)
        placed = await workflow.place(user, OrderRequest.parse({
            "items": [{"id": ESPRESSO, "qty": 1}],
            "eta_minutes": 0,
            "table_number": 2,
            "payment_method": "cash",
        }))

        card, reply = await run_order_action(workflow, callback_data("cancel", placed.order.id))
        assert reply == f"⛔️ Order {placed.order.short_id} has been canceled."
        assert "Status: <b>CANCELED</b>" in card.text
        assert "Table 2" in card.text

        card, reply = await run_order_action(workflow, callback_data("ready", placed.order.id))
        assert card is None
        assert reply == "Order cannot move from canceled to ready"

    async def test_unknown_callback(self, workflow):
        assert await run_order_action(workflow, "order:nope:1") == (None, "Unknown action")

    def test_buttons_only_count_in_admin_channel(self, settings):
        assert is_admin_chat(settings, ADMIN_CHAT_ID)
        assert not is_admin_chat(settings, 42)
        assert not is_admin_chat(settings, None)

    def test_no_admin_channel_rejects_every_chat(self, settings):
        unset = replace(settings, admin_channel_id=None)
        assert not is_admin_chat(unset, ADMIN_CHAT_ID)
        assert not is_admin_chat(unset, None)


class TestTexts:
    def test_card_text(self):
        assert "/start" in card_text(None)

    def test_webapp_keyboard(self):
        assert webapp_keyboard("") is None
        button = webapp_keyboard("https://example.org/app").inline_keyboard[0][0]
        assert button.web_app.url == "https://example.org/app"
