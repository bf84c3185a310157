import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import structlog

from kraven.chain import LogSubscription, LogWatch, decode_deployment_log
from kraven.models import DeploymentEvent

logger = structlog.get_logger()

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"

LOST_MESSAGE = "🔴 Lost connection to Base mainnet. Reconnecting..."
RESTORED_MESSAGE = "✅ Reconnected to Base mainnet."


class ChainTransport(Protocol):
    async def get_latest_height(self) -> int: ...

    async def subscribe_logs(self, address: str, topics: List[Any]) -> LogSubscription: ...

    async def unsubscribe(self, subscription_id: str) -> None: ...

    async def close(self) -> None: ...


class StreamSupervisor:
    def __init__(
        self,
        watches: Sequence[LogWatch],
        emit: Callable[[DeploymentEvent], Awaitable[Any]],
        connect: Callable[[], Awaitable[ChainTransport]],
        notify_status: Optional[Callable[[str], Awaitable[Any]]] = None,
        probe_interval_sec: float = 30.0,
        probe_timeout_sec: float = 10.0,
        reconnect_delay_sec: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.watches = list(watches)
        self._emit = emit
        self._connect = connect
        self._notify_status = notify_status
        self.probe_interval_sec = probe_interval_sec
        self.probe_timeout_sec = probe_timeout_sec
        self.reconnect_delay_sec = reconnect_delay_sec
        self._sleep = sleep
        self.state = STATE_DISCONNECTED
        self._transport: Optional[ChainTransport] = None
        self._subscriptions: Dict[str, Tuple[LogWatch, LogSubscription]] = {}
        self._consumers: List[asyncio.Task] = []
        self._probe_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopped = False
        self._loss_announced = False
        self.last_height = 0
        self.last_probe_at = 0
        self.connected_at = 0
        self.reconnect_attempts = 0
        self.stats: Dict[str, int] = {"logs": 0, "events": 0, "dropped_logs": 0}

    @property
    def is_connected(self) -> bool:
        return self.state == STATE_CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def family_connected(self, family: str) -> bool:
        if not self.is_connected:
            return False
        return any(watch.protocol_family == family for watch, _ in self._subscriptions.values())

    def health(self) -> Dict[str, Any]:
        families = sorted({w.protocol_family for w in self.watches})
        return {
            "state": self.state,
            "connected": self.is_connected,
            "families": {f: self.family_connected(f) for f in families},
            "subscriptions": len(self._subscriptions),
            "watchedContracts": len(self.watches),
            "lastHeight": self.last_height,
            "lastProbeAt": self.last_probe_at,
            "connectedAt": self.connected_at,
            "reconnectAttempts": self.reconnect_attempts,
            "reconnectPending": self.reconnect_pending,
            **self.stats,
        }

    async def start(self) -> None:
        self._stopped = False
        logger.info("starting chain listeners", contracts=len(self.watches))
        try:
            await self._connect_once()
        except Exception as e:
            logger.error("initial connect failed", error=f"{type(e).__name__}: {e}")
            await self._teardown()
            self.schedule_reconnect()

    async def stop(self) -> None:
        self._stopped = True
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._teardown()

    def schedule_reconnect(self) -> bool:
        if self._stopped or self.reconnect_pending:
            return False
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())
        return True

    async def _connect_once(self) -> None:
        self.state = STATE_CONNECTING
        transport = await self._connect()
        self._transport = transport
        self.last_height = await transport.get_latest_height()
        self.last_probe_at = int(time.time())
        await self._subscribe_all(transport)
        if not self._subscriptions:
            raise ConnectionError("no log subscription could be established")
        self.state = STATE_CONNECTED
        self.connected_at = int(time.time())
        self._probe_task = asyncio.create_task(self._probe_loop())
        logger.info("connected", height=self.last_height, subscriptions=len(self._subscriptions))

    async def _subscribe_all(self, transport: ChainTransport) -> None:
        for watch in self.watches:
            try:
                sub = await transport.subscribe_logs(watch.address, watch.topics)
            except Exception as e:
                logger.error(
                    "failed to watch contract",
                    address=watch.address,
                    family=watch.protocol_family,
                    error=f"{type(e).__name__}: {e}",
                )
                continue
            self._subscriptions[watch.address] = (watch, sub)
            self._consumers.append(asyncio.create_task(self._consume(watch, sub)))
            logger.info("watching contract", address=watch.address, family=watch.protocol_family)

    async def _consume(self, watch: LogWatch, sub: LogSubscription) -> None:
        while True:
            log = await sub.queue.get()
            if log is None:
                logger.warning("log stream ended", address=watch.address)
                await self._connection_lost("log stream ended")
                return
            self.stats["logs"] += 1
            event = decode_deployment_log(log, watch)
            if event is None:
                self.stats["dropped_logs"] += 1
                continue
            self.stats["events"] += 1
            logger.info(
                "new token deployment",
                family=event.protocol_family,
                contract=event.contract_address,
                deployer=event.deployer_address,
                tx=event.transaction_hash,
            )
            await self._emit(event)

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.probe_interval_sec)
            transport = self._transport
            if transport is None or not self.is_connected:
                return
            try:
                self.last_height = await asyncio.wait_for(
                    transport.get_latest_height(), timeout=self.probe_timeout_sec
                )
                self.last_probe_at = int(time.time())
            except Exception as e:
                logger.warning("liveness probe failed", error=f"{type(e).__name__}: {e}")
                await self._connection_lost("liveness probe failed")
                return

    async def _connection_lost(self, reason: str) -> None:
        if not self.is_connected or self._stopped:
            return
        self.state = STATE_DISCONNECTED
        logger.warning("lost websocket connection", reason=reason)
        await self._teardown()
        self.schedule_reconnect()
        if not self._loss_announced:
            self._loss_announced = True
            await self._send_status(LOST_MESSAGE)

    async def _reconnect_loop(self) -> None:
        while not self._stopped:
            await self._sleep(self.reconnect_delay_sec)
            if self._stopped:
                return
            self.reconnect_attempts += 1
            logger.info("attempting to reconnect websocket", attempt=self.reconnect_attempts)
            try:
                await self._connect_once()
            except Exception as e:
                logger.error("reconnect failed", attempt=self.reconnect_attempts, error=f"{type(e).__name__}: {e}")
                await self._teardown()
                continue
            logger.info("websocket reconnected", attempt=self.reconnect_attempts)
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
            if self._loss_announced:
                self._loss_announced = False
                await self._send_status(RESTORED_MESSAGE)
            return

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._consumers + [self._probe_task] if t is not None and t is not current]
        self._consumers = []
        self._probe_task = None
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        transport = self._transport
        self._transport = None
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        if transport is not None:
            for watch, sub in subs:
                try:
                    await asyncio.wait_for(transport.unsubscribe(sub.subscription_id), timeout=2)
                except Exception as e:
                    logger.debug("unsubscribe failed", address=watch.address, error=str(e))
            try:
                await transport.close()
            except Exception as e:
                logger.warning("transport close failed", error=f"{type(e).__name__}: {e}")
        self.state = STATE_DISCONNECTED

    async def _send_status(self, text: str) -> None:
        if self._notify_status is None:
            return
        try:
            await self._notify_status(text)
        except Exception as e:
            logger.error("status notification failed", error=f"{type(e).__name__}: {e}")
