"""HTTP surface tests against an in-process aiohttp server."""

from dataclasses import replace

import pytest

from cafeloyalty.api import create_app
from cafeloyalty.menu import MenuFetchError
from cafeloyalty.ratelimit import OrderRateLimiter

from conftest import ADMIN_BEARER, CAPPUCCINO, CHEESECAKE, FakeRedis, make_init_data


ALICE = {"id": 42, "first_name": "Alice", "username": "alice", "language_code": "en"}
ORDER_BODY = {
    "items": [{"id": CAPPUCCINO, "qty": 2}, {"id": CHEESECAKE, "qty": 1}],
    "eta_minutes": 10,
    "table_number": "3",
    "payment_method": "cash",
}


@pytest.fixture
def app(settings, store, menu, notifier, workflow):
    return create_app(settings, store, menu, notifier, workflow=workflow)


@pytest.fixture
async def client(aiohttp_client, app):
    return await aiohttp_client(app)


class TestMenu:
    async def test_menu(self, client):
        resp = await client.get("/api/menu")
        assert resp.status == 200
        data = await resp.json()
        assert data["categories"] == ["Coffee", "Desserts"]
        assert resp.headers["Access-Control-Allow-Origin"] == "https://raz-ar.github.io"

    async def test_fresh_cache_survives_feed_outage(self, client, feed, clock):
        first = await (await client.get("/api/menu")).json()
        clock.now += 30
        feed.error = MenuFetchError("down")

        resp = await client.get("/api/menu")
        assert resp.status == 200
        assert await resp.json() == first

    async def test_menu_unavailable(self, client, feed):
        feed.error = MenuFetchError("down")
        resp = await client.get("/api/menu")
        assert resp.status == 500
        assert await resp.json() == {"error": "Could not fetch menu"}


class TestAuth:
    async def test_issues_card_once(self, client):
        body = {"initData": make_init_data(ALICE)}
        first = await (await client.post("/api/auth/telegram", json=body)).json()
        second = await (await client.post("/api/auth/telegram", json=body)).json()
        assert first["telegram_id"] == 42
        assert first["stars"] == 0
        assert first["card_number"] == second["card_number"]

    async def test_missing_init_data(self, client):
        resp = await client.post("/api/auth/telegram", json={})
        assert resp.status == 400

    async def test_forged_init_data(self, client):
        resp = await client.post("/api/auth/telegram", json={"initData": make_init_data(ALICE, token="1:FORGED")})
        assert resp.status == 403
        assert await resp.json() == {"error": "Invalid initData"}

    async def test_invalid_json(self, client):
        resp = await client.post("/api/auth/telegram", data="{nope", headers={"Content-Type": "application/json"})
        assert resp.status == 400


class TestOrder:
    async def test_scenario_place_order(self, client, store):
        resp = await client.post("/api/order", json={"initData": make_init_data(ALICE), **ORDER_BODY})
        assert resp.status == 200
        data = await resp.json()
        assert data["ok"] is True
        assert data["total_amount"] == 1000
        assert data["stars_added"] == 3
        assert data["new_stars"] == 3

        order = await store.get_order(data["order_id"])
        assert order.status == "pending"
        assert order.short_id == data["short_id"]

    async def test_validation_before_auth(self, client):
        resp = await client.post("/api/order", json={"initData": "forged", **ORDER_BODY, "eta_minutes": 5})
        assert resp.status == 400
        assert await resp.json() == {"error": "Invalid ETA"}

    async def test_forged_init_data(self, client):
        resp = await client.post("/api/order", json={"initData": make_init_data(ALICE, token="1:FORGED"), **ORDER_BODY})
        assert resp.status == 403

    async def test_menu_down_is_503(self, client, feed):
        feed.error = MenuFetchError("down")
        resp = await client.post("/api/order", json={"initData": make_init_data(ALICE), **ORDER_BODY})
        assert resp.status == 503

    async def test_rate_limited(self, aiohttp_client, settings, store, menu, notifier, workflow):
        app = create_app(settings, store, menu, notifier, workflow=workflow,
                         rate_limiter=OrderRateLimiter(FakeRedis(), 60))
        client = await aiohttp_client(app)
        body = {"initData": make_init_data(ALICE), **ORDER_BODY}
        assert (await client.post("/api/order", json=body)).status == 200
        assert (await client.post("/api/order", json=body)).status == 429

    async def test_failed_order_does_not_use_up_rate_limit(self, aiohttp_client, settings, store, menu, notifier,
                                                           workflow, feed):
        app = create_app(settings, store, menu, notifier, workflow=workflow,
                         rate_limiter=OrderRateLimiter(FakeRedis(), 60))
        client = await aiohttp_client(app)
        body = {"initData": make_init_data(ALICE), **ORDER_BODY}

        feed.error = MenuFetchError("down")
        assert (await client.post("/api/order", json=body)).status == 503

        feed.error = None
        assert (await client.post("/api/order", json=body)).status == 200
        assert (await client.post("/api/order", json=body)).status == 429


class TestRedeem:
    async def test_scenario_not_enough_stars_keeps_balance(self, client, store):
        await client.post("/api/auth/telegram", json={"initData": make_init_data(ALICE)})
        await client.post(
            "/api/admin/accrue",
            json={"by": "telegram_id", "id": 42, "stars": 5},
            headers={"Authorization": f"Bearer {ADMIN_BEARER}"},
        )

        resp = await client.post("/api/redeem", json={"telegram_id": 42, "rewardKey": "free_espresso"})

        assert resp.status == 400
        assert await resp.json() == {"error": "NOT_ENOUGH_STARS"}
        assert (await store.get_user(42)).stars == 5
        assert len(await store.list_transactions(42)) == 1

    async def test_redeem(self, client, store):
        user = await client.post("/api/auth/telegram", json={"initData": make_init_data(ALICE)})
        card = (await user.json())["card_number"]
        await client.post(
            "/api/admin/accrue",
            json={"by": "card", "id": card, "stars": 12},
            headers={"Authorization": f"Bearer {ADMIN_BEARER}"},
        )
        resp = await client.post("/api/redeem", json={"telegram_id": "42", "rewardKey": "free_espresso"})
        assert await resp.json() == {"ok": True, "new_total": 2}

    async def test_missing_fields(self, client):
        resp = await client.post("/api/redeem", json={"telegram_id": 42})
        assert resp.status == 400


class TestAdmin:
    async def test_requires_bearer(self, client):
        resp = await client.post("/api/admin/accrue", json={"by": "card", "id": 1234, "stars": 5})
        assert resp.status == 401
        resp = await client.post(
            "/api/admin/accrue",
            json={"by": "card", "id": 1234, "stars": 5},
            headers={"Authorization": "Bearer wrong"},
        )
        assert resp.status == 401

    async def test_accrue_by_username_amount(self, client, store):
        await client.post("/api/auth/telegram", json={"initData": make_init_data(ALICE)})
        resp = await client.post(
            "/api/admin/accrue",
            json={"by": "username", "id": "@alice", "amount": 700},
            headers={"Authorization": f"Bearer {ADMIN_BEARER}"},
        )
        data = await resp.json()
        assert data["ok"] is True
        assert data["user"]["stars"] == 2
        assert await store.ledger_balance(42) == 2

    async def test_missing_params(self, client):
        resp = await client.post(
            "/api/admin/accrue",
            json={"by": "card", "id": 1234},
            headers={"Authorization": f"Bearer {ADMIN_BEARER}"},
        )
        assert resp.status == 400
        assert await resp.json() == {"error": "Missing params"}

    async def test_unknown_user(self, client):
        resp = await client.post(
            "/api/admin/accrue",
            json={"by": "card", "id": 1234, "stars": 1},
            headers={"Authorization": f"Bearer {ADMIN_BEARER}"},
        )
        assert resp.status == 404

    async def test_disabled_without_configured_bearer(self, aiohttp_client, settings, store, menu, notifier):
        client = await aiohttp_client(create_app(replace(settings, admin_bearer=""), store, menu, notifier))
        resp = await client.post(
            "/api/admin/accrue",
            json={"by": "card", "id": 1234, "stars": 1},
            headers={"Authorization": "Bearer "},
        )
        assert resp.status == 401


class TestMisc:
    async def test_cors_preflight(self, client):
        resp = await client.options(
            "/api/order",
            headers={"Origin": "https://raz-ar.github.io", "Access-Control-Request-Method": "POST"},
        )
        assert resp.status == 204
        assert resp.headers["Access-Control-Allow-Origin"] == "https://raz-ar.github.io"
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]

    async def test_errors_carry_cors_headers(self, client):
        resp = await client.post("/api/redeem", json={})
        assert resp.status == 400
        assert resp.headers["Access-Control-Allow-Origin"] == "https://raz-ar.github.io"

    async def test_health(self, client):
        resp = await client.get("/health")
        data = await resp.json()
        assert data["status"] == "ok"
        assert "timestamp" in data

    async def test_rewards(self, client):
        data = await (await client.get("/api/rewards")).json()
        assert [r["key"] for r in data["rewards"]] == ["free_espresso", "free_cappuccino", "free_dessert"]

    async def test_webhook_secret(self, aiohttp_client, settings, store, menu, notifier):
        client = await aiohttp_client(create_app(replace(settings, webhook_secret="hook"), store, menu, notifier))
        assert (await client.post("/webhook", json={"update_id": 1})).status == 401
        resp = await client.post("/webhook", json={"update_id": 1},
                                 headers={"X-Telegram-Bot-Api-Secret-Token": "hook"})
        assert resp.status == 200
        assert await resp.text() == "OK"
