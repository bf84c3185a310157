"""Shared fixtures and fakes for KRAVEN tests."""

import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from kraven.chain import LogSubscription, RPCError
from kraven.models import TokenRecord
from kraven.storage import Storage

CLANKER_FACTORY = "0x2964cde93abc2840003fd1307f9f9fd734493774"
DOPPLER_AIRLOCK = "0x660eaaedebc968f8f3694354fa8ec0b4c5ba8d12"
TOKEN = "0x" + "ab" * 20
DEPLOYER = "0x" + "cd" * 20
TX = "0x" + "11" * 32


def topic_for(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / "kraven.db"))
    yield s
    s.close()


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeResolver:
    def __init__(self, name: str, token: Optional[TokenRecord] = None, wallets: Any = None):
        self.name = name
        self.token = token
        self.wallets = wallets if wallets is not None else set()
        self.fetch_calls: List[Dict[str, Any]] = []
        self.discover_calls: List[str] = []

    async def fetch(self, contract_address: str, attempts: Optional[int] = None) -> Optional[TokenRecord]:
        self.fetch_calls.append({"contract": contract_address, "attempts": attempts})
        return self.token

    async def discover_wallets(self, handle: str) -> Set[str]:
        self.discover_calls.append(handle)
        if isinstance(self.wallets, Exception):
            raise self.wallets
        return set(self.wallets)


class FakeNotifier:
    def __init__(self):
        self.alerts: List[Any] = []
        self.status: List[str] = []
        self.alerts_sent = 0

    async def send_alert(self, resolved) -> bool:
        self.alerts.append(resolved)
        self.alerts_sent += 1
        return True

    async def send_status_message(self, text: str) -> bool:
        self.status.append(text)
        return True


class FakeTransport:
    def __init__(self, height: int = 100, fail_subscribe: Set[str] = frozenset()):
        self.height = height
        self.fail_subscribe = set(fail_subscribe)
        self.fail_height = False
        self.subscriptions: Dict[str, LogSubscription] = {}
        self.unsubscribed: List[str] = []
        self.closed = False

    async def get_latest_height(self) -> int:
        if self.fail_height:
            raise ConnectionError("height probe failed")
        return self.height

    async def subscribe_logs(self, address: str, topics: List[Any]) -> LogSubscription:
        if address in self.fail_subscribe:
            raise RPCError(f"subscribe refused for {address}")
        sub = LogSubscription(subscription_id=f"sub-{len(self.subscriptions) + 1}", queue=asyncio.Queue())
        self.subscriptions[address] = sub
        return sub

    async def unsubscribe(self, subscription_id: str) -> None:
        self.unsubscribed.append(subscription_id)

    async def close(self) -> None:
        self.closed = True


class FakeTelegram:
    def __init__(self):
        self.sent: List[str] = []
        self.edited: List[Dict[str, Any]] = []

    async def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = "HTML") -> Dict[str, Any]:
        self.sent.append(text)
        return {"message_id": len(self.sent), "chat": {"id": chat_id}}

    async def edit_message_text(self, chat_id: str, message_id: int, text: str, parse_mode: Optional[str] = "HTML"):
        self.edited.append({"message_id": message_id, "text": text})
        return {"message_id": message_id}
