import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
import structlog
from eth_abi.abi import decode as abi_decode
from web3 import Web3

from kraven.models import PROTOCOL_CLANKER, PROTOCOL_DOPPLER, DeploymentEvent

logger = structlog.get_logger()

CLANKER_FACTORY_ADDRESSES = (
    "0x2964cde93abc2840003fd1307f9f9fd734493774",
    "0x966835a643ec1b854486da3b635aed5bcdb75db6",
    "0x0000000000013949f288172f7e1721b0d25721b0",
)
DOPPLER_AIRLOCK_ADDRESS = "0x660eaaedebc968f8f3694354fa8ec0b4c5ba8d12"

CLANKER_TOKEN_CREATED = (
    "TokenCreated(address,uint256,address,uint256,string,string,uint256,uint256,string)"
)
CLANKER_DATA_TYPES = ("uint256", "uint256", "string", "string", "uint256", "uint256", "string")
DOPPLER_TOKEN_CREATED = "TokenCreated(address,address,string,string)"
DOPPLER_DATA_TYPES = ("string", "string")


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def try_normalize_address(addr: Any) -> Optional[str]:
    try:
        return normalize_address(addr)
    except ValueError:
        return None


def decode_topic_address(topic: str) -> str:
    if not isinstance(topic, str):
        raise ValueError(f"topic must be a string, got: {type(topic)}")
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    if len(topic) < 40:
        raise ValueError(f"topic too short for an address: {topic}")
    return normalize_address("0x" + topic[-40:])


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


@dataclass(frozen=True)
class LogWatch:
    address: str
    protocol_family: str
    signature: str
    data_types: Tuple[str, ...] = ()
    name_index: Optional[int] = None
    symbol_index: Optional[int] = None
    has_deployer_topic: bool = True
    topic0: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "topic0", event_topic(self.signature))

    @property
    def topics(self) -> List[Any]:
        return [self.topic0]


def build_log_watches(
    clanker_factories: Sequence[str], doppler_airlock: Optional[str]
) -> List[LogWatch]:
    watches = [
        LogWatch(
            address=normalize_address(addr),
            protocol_family=PROTOCOL_CLANKER,
            signature=CLANKER_TOKEN_CREATED,
            data_types=CLANKER_DATA_TYPES,
            name_index=2,
            symbol_index=3,
        )
        for addr in clanker_factories
    ]
    if doppler_airlock:
        watches.append(
            LogWatch(
                address=normalize_address(doppler_airlock),
                protocol_family=PROTOCOL_DOPPLER,
                signature=DOPPLER_TOKEN_CREATED,
                data_types=DOPPLER_DATA_TYPES,
                name_index=0,
                symbol_index=1,
            )
        )
    return watches


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def _decode_name_symbol(log: Dict[str, Any], watch: LogWatch) -> Tuple[Optional[str], Optional[str]]:
    if not watch.data_types or watch.name_index is None:
        return None, None
    data = log.get("data")
    if not isinstance(data, str) or len(data) <= 2:
        return None, None
    try:
        values = abi_decode(list(watch.data_types), bytes.fromhex(data[2:] if data.startswith("0x") else data))
    except Exception as e:
        logger.debug("log data not decodable", address=watch.address, error=str(e))
        return None, None
    name = values[watch.name_index]
    symbol = values[watch.symbol_index] if watch.symbol_index is not None else None
    return (name or None), (symbol or None)


def decode_deployment_log(log: Any, watch: LogWatch) -> Optional[DeploymentEvent]:
    if not isinstance(log, dict):
        logger.warning("dropping malformed log", address=watch.address, log_type=type(log).__name__)
        return None
    topics = log.get("topics") or []
    tx_hash = str(log.get("transactionHash") or "").lower()
    if len(topics) < 2:
        logger.warning("dropping log without token topic", address=watch.address, tx=tx_hash)
        return None
    try:
        contract_address = decode_topic_address(topics[1])
        deployer = None
        if watch.has_deployer_topic and len(topics) > 2:
            deployer = decode_topic_address(topics[2])
        block_number = parse_hex_int(log.get("blockNumber"))
    except ValueError as e:
        logger.warning("dropping undecodable log", address=watch.address, tx=tx_hash, error=str(e))
        return None
    name, symbol = _decode_name_symbol(log, watch)
    return DeploymentEvent(
        contract_address=contract_address,
        deployer_address=deployer,
        transaction_hash=tx_hash,
        protocol_family=watch.protocol_family,
        factory_address=watch.address,
        block_number=block_number,
        log_name=name,
        log_symbol=symbol,
    )


class RPCError(RuntimeError):
    pass


@dataclass
class LogSubscription:
    subscription_id: str
    queue: "asyncio.Queue[Optional[Dict[str, Any]]]"


class WsRpcConnection:
    def __init__(
        self,
        url: str,
        connect_timeout_sec: float = 30,
        request_timeout_sec: float = 10,
        heartbeat_sec: float = 20,
    ):
        self.url = url
        self.connect_timeout_sec = connect_timeout_sec
        self.request_timeout_sec = request_timeout_sec
        self.heartbeat_sec = heartbeat_sec
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._subscriptions: Dict[str, asyncio.Queue] = {}
        self._id = 1
        self.closed = True

    async def open(self) -> "WsRpcConnection":
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=self.heartbeat_sec),
                timeout=self.connect_timeout_sec,
            )
        except BaseException:
            await self._session.close()
            self._session = None
            raise
        self.closed = False
        self._reader = asyncio.create_task(self._read_loop())
        return self

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            while True:
                msg = await self._ws.receive()
                if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    logger.warning("websocket closed", url=self.url, msg_type=str(msg.type))
                    break
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    data = msg.json()
                except ValueError:
                    logger.warning("ignoring non-json websocket frame", url=self.url)
                    continue
                self._dispatch(data)
        finally:
            self._mark_closed()

    def _dispatch(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        if data.get("method") == "eth_subscription":
            params = data.get("params") or {}
            sub_id = params.get("subscription")
            if sub_id is None:
                return
            self._subscriptions.setdefault(str(sub_id), asyncio.Queue()).put_nowait(params.get("result"))
            return
        fut = self._pending.get(data.get("id"))
        if fut is None or fut.done():
            return
        if data.get("error") is not None:
            fut.set_exception(RPCError(f"RPC error: {data['error']}"))
        else:
            fut.set_result(data.get("result"))

    def _mark_closed(self) -> None:
        self.closed = True
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(ConnectionError("websocket connection closed"))
        self._pending.clear()
        for q in self._subscriptions.values():
            q.put_nowait(None)
        self._subscriptions.clear()

    async def request(self, method: str, params: List[Any]) -> Any:
        if self.closed or self._ws is None:
            raise ConnectionError("websocket connection is not open")
        req_id = self._id
        self._id += 1
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            await self._ws.send_json({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params})
            return await asyncio.wait_for(fut, timeout=self.request_timeout_sec)
        finally:
            self._pending.pop(req_id, None)

    async def get_latest_height(self) -> int:
        return parse_hex_int(await self.request("eth_blockNumber", []))

    async def subscribe_logs(self, address: str, topics: List[Any]) -> LogSubscription:
        sub_id = await self.request("eth_subscribe", ["logs", {"address": address, "topics": topics}])
        if not sub_id:
            raise RPCError(f"empty subscription id for {address}")
        queue = self._subscriptions.setdefault(str(sub_id), asyncio.Queue())
        return LogSubscription(subscription_id=str(sub_id), queue=queue)

    async def unsubscribe(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)
        if self.closed:
            return
        await self.request("eth_unsubscribe", [subscription_id])

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._mark_closed()


async def open_ws_connection(
    url: str, connect_timeout_sec: float = 30, request_timeout_sec: float = 10
) -> WsRpcConnection:
    return await WsRpcConnection(
        url,
        connect_timeout_sec=connect_timeout_sec,
        request_timeout_sec=request_timeout_sec,
    ).open()
