"""Tests for application wiring and the admin API."""

from aiohttp import test_utils

from kraven.bot import KravenBot
from kraven.config import parse_config
from kraven.models import PROTOCOL_CLANKER, DeploymentEvent

from .conftest import DEPLOYER, TOKEN, TX, run


def make_bot(tmp_path):
    cfg = parse_config({"WS_RPC_URL": "wss://base.example/ws", "SQLITE_PATH": str(tmp_path / "kraven.db")})
    return KravenBot(cfg)


def event(tx=TX):
    return DeploymentEvent(
        contract_address=TOKEN, deployer_address=DEPLOYER, transaction_hash=tx, protocol_family=PROTOCOL_CLANKER
    )


class TestWiring:
    def test_telegram_disabled_without_token(self, tmp_path):
        bot = make_bot(tmp_path)
        try:
            assert bot.telegram is None
            assert bot.commands is None
            assert not bot.notifier.enabled
            assert len(bot.supervisor.watches) == 4
            assert bot.clanker.max_attempts == 3
            assert bot.clanker.retry_delay_sec == 2.0
        finally:
            bot.storage.close()

    def test_duplicate_events_are_dropped_while_pending(self, tmp_path):
        bot = make_bot(tmp_path)

        async def scenario():
            await bot.enqueue_event(event())
            await bot.enqueue_event(event())
            await bot.enqueue_event(event(tx="0x" + "22" * 32))

        try:
            run(scenario())
            assert bot.queue.qsize() == 2
            assert bot.stats["duplicate_events"] == 1
            assert bot.stats["enqueued_events"] == 2
        finally:
            bot.storage.close()


class TestAdminApi:
    def test_watchlist_round_trip(self, tmp_path):
        bot = make_bot(tmp_path)

        async def scenario():
            app = await bot.create_api_app()
            async with test_utils.TestClient(test_utils.TestServer(app)) as client:
                added = await client.post("/watchlist", json={"handle": "@Alice", "discover": False})
                added_body = await added.json()
                bad = await client.post("/watchlist", json={"handle": "not valid"})
                listed = await client.get("/watchlist")
                listed_body = await listed.json()
                removed = await client.delete("/watchlist/alice")
                missing = await client.delete("/watchlist/alice")
                return added.status, added_body, bad.status, listed_body, removed.status, missing.status

        try:
            added_status, added_body, bad_status, listed_body, removed_status, missing_status = run(scenario())
        finally:
            bot.storage.close()
        assert added_status == 200
        assert added_body["handle"] == "alice"
        assert added_body["added"] is True
        assert bad_status == 400
        assert listed_body["count"] == 1
        assert listed_body["items"][0]["handle"] == "alice"
        assert removed_status == 200
        assert missing_status == 404

    def test_health_and_alerts(self, tmp_path):
        bot = make_bot(tmp_path)

        async def scenario():
            app = await bot.create_api_app()
            async with test_utils.TestClient(test_utils.TestServer(app)) as client:
                health = await client.get("/health")
                health_body = await health.json()
                alerts = await client.get("/alerts", params={"limit": "3"})
                alerts_body = await alerts.json()
                bad_limit = await client.get("/alerts", params={"limit": "many"})
                return health_body, alerts_body, bad_limit.status

        try:
            health, alerts, bad_limit_status = run(scenario())
        finally:
            bot.storage.close()
        assert health["ok"] is False
        assert health["chain"]["state"] == "disconnected"
        assert health["watchedCount"] == 0
        assert health["telegram"] is False
        assert alerts == {"count": 0, "items": []}
        assert bad_limit_status == 400
