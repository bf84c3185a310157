"""Tests for the sqlite watchlist, wallet cache and alert log."""

from kraven.models import PLATFORM_CLANKER, PROTOCOL_CLANKER, SOURCE_INDEXER, ResolvedDeployment, TokenRecord

from .conftest import DEPLOYER, TOKEN, TX


def resolved(name="Foo", contract=TOKEN, handle="alice"):
    return ResolvedDeployment(
        token=TokenRecord(contract_address=contract, name=name, symbol="FOO"),
        handle=handle,
        platform_label=PLATFORM_CLANKER,
        source=SOURCE_INDEXER,
        protocol_family=PROTOCOL_CLANKER,
        deployer_address=DEPLOYER,
        transaction_hash=TX,
    )


class TestWatchlist:
    def test_add_is_unique(self, storage):
        assert storage.add_watched_account("alice") is True
        assert storage.add_watched_account("Alice") is False
        assert storage.get_watched_count() == 1
        assert storage.is_handle_watched("ALICE")

    def test_list(self, storage):
        storage.add_watched_account("alice")
        storage.add_watched_account("bob")
        assert {e.handle for e in storage.get_watched_accounts()} == {"alice", "bob"}

    def test_remove_drops_wallets(self, storage):
        storage.add_watched_account("alice")
        storage.save_wallet_mapping("alice", DEPLOYER, "discovery")
        assert storage.remove_watched_account("alice") is True
        assert storage.remove_watched_account("alice") is False
        assert not storage.is_handle_watched("alice")
        assert storage.get_handle_by_wallet(DEPLOYER) is None


class TestWalletMappings:
    def test_upsert_keeps_one_row(self, storage):
        assert storage.save_wallet_mapping("alice", DEPLOYER.upper().replace("0X", "0x"), "discovery")
        assert storage.save_wallet_mapping("alice", DEPLOYER, "learned")
        wallets = storage.get_wallets_for_handle("alice")
        assert len(wallets) == 1
        assert wallets[0].wallet_address == DEPLOYER
        assert wallets[0].source == "learned"

    def test_lookup_by_wallet(self, storage):
        storage.save_wallet_mapping("alice", DEPLOYER, "learned")
        assert storage.get_handle_by_wallet(DEPLOYER.upper().replace("0X", "0x")) == "alice"
        assert storage.get_handle_by_wallet("0x" + "99" * 20) is None

    def test_invalid_address_is_rejected(self, storage):
        assert storage.save_wallet_mapping("alice", "not-an-address", "learned") is False
        assert storage.get_wallets_for_handle("alice") == []


class TestAlertHistory:
    def test_recent_alerts_newest_first(self, storage):
        storage.save_alert_history(resolved(name="First"))
        storage.save_alert_history(resolved(name="Second", contract="0x" + "ef" * 20))
        alerts = storage.get_recent_alerts(5)
        assert [a.token_name for a in alerts] == ["Second", "First"]
        assert alerts[1].view_url == f"https://clanker.world/clanker/{TOKEN}"
        assert alerts[1].tx_hash == TX
        assert alerts[1].handle == "alice"

    def test_limit(self, storage):
        for i in range(7):
            storage.save_alert_history(resolved(name=f"T{i}"))
        assert len(storage.get_recent_alerts()) == 5
        assert len(storage.get_recent_alerts(2)) == 2
