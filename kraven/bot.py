import argparse
import asyncio
import contextlib
import logging
import signal
import sqlite3
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog
from aiohttp import web

from kraven.chain import build_log_watches, open_ws_connection
from kraven.commands import CommandProcessor, discover_wallets
from kraven.config import AppConfig, load_config
from kraven.handles import parse_handle_input
from kraven.models import MAPPING_SOURCE_DISCOVERY, PROTOCOL_CLANKER, PROTOCOL_DOPPLER, DeploymentEvent
from kraven.notifier import TelegramClient, TelegramNotifier
from kraven.pipeline import ResolutionPipeline
from kraven.resolvers import BankrResolver, ClankerResolver, DopplerResolver, MetadataResolver
from kraven.storage import Storage
from kraven.supervisor import ChainTransport, StreamSupervisor

logger = structlog.get_logger()


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


class KravenBot:
    def __init__(self, cfg: AppConfig):
        self.cfg = cfg
        self.started_at = time.time()
        self.storage = Storage(cfg.sqlite_path)

        resolver_kwargs: Dict[str, Any] = {
            "max_attempts": cfg.resolver_max_attempts,
            "retry_delay_sec": cfg.resolver_retry_delay_ms / 1000.0,
            "timeout_sec": cfg.resolver_timeout_sec,
        }
        self.clanker = ClankerResolver(cfg.clanker_api_url, cfg.clanker_search_url, **resolver_kwargs)
        self.doppler = DopplerResolver(cfg.doppler_api_url, chain_id=cfg.chain_id, **resolver_kwargs)
        self.bankr = BankrResolver(cfg.bankr_api_url, **resolver_kwargs)
        self.resolvers: List[MetadataResolver] = [self.clanker, self.doppler, self.bankr]

        self.telegram: Optional[TelegramClient] = None
        if cfg.telegram_enabled:
            self.telegram = TelegramClient(cfg.telegram_bot_token)
        self.notifier = TelegramNotifier(self.telegram, cfg.telegram_chat_id)

        self.pipeline = ResolutionPipeline(
            self.storage,
            self.notifier,
            {PROTOCOL_CLANKER: self.clanker, PROTOCOL_DOPPLER: self.doppler},
            overlay_resolver=self.bankr,
            overlay_families=(PROTOCOL_DOPPLER,),
            fast_path_timeout_sec=cfg.fast_path_timeout_sec,
        )

        self.queue: asyncio.Queue[DeploymentEvent] = asyncio.Queue(maxsize=10000)
        self.pending_events: Set[Tuple[str, str]] = set()
        self.supervisor = StreamSupervisor(
            build_log_watches(cfg.clanker_factory_addresses, cfg.doppler_airlock_address),
            emit=self.enqueue_event,
            connect=self.open_transport,
            notify_status=self.notifier.send_status_message,
            probe_interval_sec=cfg.probe_interval_sec,
            probe_timeout_sec=cfg.ws_request_timeout_sec,
            reconnect_delay_sec=cfg.reconnect_delay_sec,
        )

        self.commands: Optional[CommandProcessor] = None
        if self.telegram is not None:
            self.commands = CommandProcessor(
                self.telegram,
                cfg.telegram_chat_id,
                self.storage,
                self.resolvers,
                self.supervisor,
                self.notifier,
                started_at=self.started_at,
            )

        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.stats: Dict[str, Any] = {
            "enqueued_events": 0,
            "duplicate_events": 0,
            "processed_events": 0,
            "started_at": int(self.started_at),
        }

    async def __aenter__(self) -> "KravenBot":
        for resolver in self.resolvers:
            await resolver.__aenter__()
        if self.telegram is not None:
            await self.telegram.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        for resolver in self.resolvers:
            await resolver.__aexit__(exc_type, exc, tb)
        if self.telegram is not None:
            await self.telegram.__aexit__(exc_type, exc, tb)
        self.storage.close()

    async def open_transport(self) -> ChainTransport:
        return await open_ws_connection(
            self.cfg.ws_rpc_url,
            connect_timeout_sec=self.cfg.ws_connect_timeout_sec,
            request_timeout_sec=self.cfg.ws_request_timeout_sec,
        )

    async def enqueue_event(self, event: DeploymentEvent) -> None:
        key = (event.transaction_hash, event.contract_address)
        if key in self.pending_events:
            self.stats["duplicate_events"] += 1
            return
        self.pending_events.add(key)
        await self.queue.put(event)
        self.stats["enqueued_events"] += 1

    async def consumer_loop(self) -> None:
        while not self.stop_event.is_set():
            event = await self.queue.get()
            try:
                await self.pipeline.handle_event(event)
                self.stats["processed_events"] += 1
            except Exception:
                logger.exception("pipeline worker error", contract=event.contract_address, tx=event.transaction_hash)
            finally:
                self.pending_events.discard((event.transaction_hash, event.contract_address))
                self.queue.task_done()

    def build_health_payload(self) -> Dict[str, Any]:
        return {
            "ok": self.supervisor.is_connected,
            "uptimeSec": int(time.time() - self.started_at),
            "queueSize": self.queue.qsize(),
            "pendingEvents": len(self.pending_events),
            "chain": self.supervisor.health(),
            "pipeline": dict(self.pipeline.stats),
            "alertsSent": self.notifier.alerts_sent,
            "telegram": self.notifier.enabled,
            "stats": dict(self.stats),
        }

    async def health_handler(self, request: web.Request) -> web.Response:
        payload = self.build_health_payload()
        payload["watchedCount"] = self.storage.get_watched_count()
        return web.json_response(payload)

    async def watchlist_handler(self, request: web.Request) -> web.Response:
        items = [{"handle": a.handle, "addedAt": a.added_at} for a in self.storage.get_watched_accounts()]
        return web.json_response({"count": len(items), "items": items})

    async def watchlist_add_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except Exception:
            return web.json_response({"error": "invalid json body"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "invalid json body"}, status=400)

        handle = parse_handle_input(str(payload.get("handle", "")))
        if not handle:
            return web.json_response({"error": "handle is invalid"}, status=400)
        try:
            added = self.storage.add_watched_account(handle)
        except sqlite3.Error as e:
            return web.json_response({"error": str(e)}, status=500)

        wallets: List[str] = []
        if payload.get("discover", True):
            for wallet in sorted(await discover_wallets(self.resolvers, handle)):
                if self.storage.save_wallet_mapping(handle, wallet, MAPPING_SOURCE_DISCOVERY):
                    wallets.append(wallet)
        return web.json_response({"ok": True, "handle": handle, "added": added, "wallets": wallets})

    async def watchlist_delete_handler(self, request: web.Request) -> web.Response:
        handle = parse_handle_input(str(request.match_info.get("handle", "")))
        if not handle:
            return web.json_response({"error": "handle is invalid"}, status=400)
        try:
            removed = self.storage.remove_watched_account(handle)
        except sqlite3.Error as e:
            return web.json_response({"error": str(e)}, status=500)
        if not removed:
            return web.json_response({"error": f"handle not found: {handle}"}, status=404)
        return web.json_response({"ok": True, "handle": handle})

    async def alerts_handler(self, request: web.Request) -> web.Response:
        try:
            limit_n = int(request.query.get("limit", "5"))
        except ValueError:
            return web.json_response({"error": "limit must be an integer"}, status=400)
        limit_n = max(1, min(limit_n, 100))
        items = [
            {
                "tokenName": a.token_name,
                "tokenSymbol": a.token_symbol,
                "contractAddress": a.contract_address,
                "handle": a.handle,
                "platform": a.platform,
                "viewUrl": a.view_url,
                "txHash": a.tx_hash,
                "alertedAt": a.alerted_at,
            }
            for a in self.storage.get_recent_alerts(limit_n)
        ]
        return web.json_response({"count": len(items), "items": items})

    async def create_api_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/watchlist", self.watchlist_handler)
        app.router.add_post("/watchlist", self.watchlist_add_handler)
        app.router.add_delete("/watchlist/{handle}", self.watchlist_delete_handler)
        app.router.add_get("/alerts", self.alerts_handler)
        return app

    async def run(self) -> None:
        for _ in range(max(1, self.cfg.pipeline_workers)):
            self.tasks.append(asyncio.create_task(self.consumer_loop()))
        if self.commands is not None:
            self.tasks.append(asyncio.create_task(self.commands.poll_loop()))

        await self.supervisor.start()

        runner: Optional[web.AppRunner] = None
        if self.cfg.api_port > 0:
            app = await self.create_api_app()
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info("admin api listening", host=self.cfg.api_host, port=self.cfg.api_port)

        await self.notifier.send_status_message(
            "\n".join(
                [
                    "✅ <b>KRAVEN is online</b>",
                    "",
                    f"Monitoring <b>{len(self.supervisor.watches)}</b> factory contracts on Base mainnet.",
                    "Send /help to see available commands.",
                ]
            )
        )
        logger.info("kraven is fully operational", watched=self.storage.get_watched_count())

        try:
            while not self.stop_event.is_set():
                await asyncio.sleep(1)
        finally:
            if runner is not None:
                await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        await self.supervisor.stop()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self.tasks = []


async def main_async(config_path: str) -> None:
    cfg = load_config(config_path)
    configure_logging(cfg.log_level)
    logger.info("kraven is starting up", chat_id=cfg.telegram_chat_id or None)
    async with KravenBot(cfg) as bot:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(bot.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        logger.info("shutting down")
        await bot.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="KRAVEN: alert when watched X accounts deploy tokens on Base"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    args = parser.parse_args()

    try:
        asyncio.run(main_async(args.config))
    except KeyboardInterrupt:
        pass
    except (ValueError, OSError) as e:
        raise SystemExit(f"KRAVEN startup failed: {e}") from e


if __name__ == "__main__":
    main()
