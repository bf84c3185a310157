import asyncio
import sqlite3
import time
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import aiohttp
import structlog

from kraven.handles import parse_handle_input
from kraven.models import MAPPING_SOURCE_DISCOVERY, PROTOCOL_CLANKER, PROTOCOL_DOPPLER
from kraven.notifier import TelegramClient, TelegramError, TelegramNotifier, escape_html
from kraven.resolvers import MetadataResolver
from kraven.storage import Storage
from kraven.supervisor import StreamSupervisor

logger = structlog.get_logger()

DB_ERROR_REPLY = "❌ Database error. Please try again."
TELEGRAM_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, TelegramError, ValueError)

HELP_TEXT = "\n".join(
    [
        "🤖 <b>KRAVEN: Command Reference</b>",
        "",
        "<b>/add</b> [URL or handle] - Add an X account to your watchlist",
        "  Example: <code>/add @username</code> or <code>/add https://x.com/username</code>",
        "",
        "<b>/remove</b> [handle] - Remove an account from your watchlist",
        "  Example: <code>/remove @username</code>",
        "",
        "<b>/list</b> - Show all currently watched accounts",
        "",
        "<b>/status</b> - Show bot uptime, WebSocket status, and alert count",
        "",
        "<b>/recent</b> - Show the last 5 alerts sent",
        "",
        "<b>/help</b> - Show this help message",
        "",
        "KRAVEN monitors Clanker, Doppler &amp; Bankr token deployments on Base "
        "and alerts you when a watched account deploys a token.",
    ]
)


def format_uptime(seconds: float) -> str:
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def split_command(text: str) -> Optional[Tuple[str, str]]:
    text = (text or "").strip()
    if not text.startswith("/"):
        return None
    parts = text.split(maxsplit=1)
    command = parts[0][1:].split("@", 1)[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""
    return command, arg


async def discover_wallets(resolvers: Sequence[MetadataResolver], handle: str) -> Set[str]:
    results = await asyncio.gather(*(r.discover_wallets(handle) for r in resolvers), return_exceptions=True)
    wallets: Set[str] = set()
    for resolver, result in zip(resolvers, results):
        if isinstance(result, BaseException):
            logger.error(
                "wallet discovery failed",
                resolver=resolver.name,
                handle=handle,
                error=f"{type(result).__name__}: {result}",
            )
            continue
        wallets |= result
    return wallets


class CommandProcessor:
    def __init__(
        self,
        client: TelegramClient,
        chat_id: str,
        storage: Storage,
        resolvers: Sequence[MetadataResolver],
        supervisor: StreamSupervisor,
        notifier: TelegramNotifier,
        started_at: Optional[float] = None,
        poll_timeout_sec: int = 30,
    ):
        self.client = client
        self.chat_id = str(chat_id)
        self.storage = storage
        self.resolvers = list(resolvers)
        self.supervisor = supervisor
        self.notifier = notifier
        self.started_at = started_at if started_at is not None else time.time()
        self.poll_timeout_sec = poll_timeout_sec
        self.handlers = {
            "add": self.cmd_add,
            "remove": self.cmd_remove,
            "list": self.cmd_list,
            "status": self.cmd_status,
            "recent": self.cmd_recent,
            "help": self.cmd_help,
            "start": self.cmd_help,
        }

    async def reply(self, text: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.client.send_message(self.chat_id, text)
        except TELEGRAM_ERRORS as e:
            logger.error("telegram reply failed", error=f"{type(e).__name__}: {e}")
            return None

    async def handle_message(self, chat_id: str, text: str) -> None:
        parsed = split_command(text)
        if parsed is None:
            return
        if str(chat_id) != self.chat_id:
            logger.warning("ignoring command from unknown chat", chat_id=chat_id)
            return
        command, arg = parsed
        handler = self.handlers.get(command)
        if handler is None:
            return
        logger.info("command received", command=command, arg=arg)
        await handler(arg)

    async def discover_wallets(self, handle: str) -> Set[str]:
        return await discover_wallets(self.resolvers, handle)

    async def cmd_add(self, arg: str) -> None:
        if not arg:
            await self.reply(
                "❌ Usage: /add [X profile URL or handle]\n"
                "Example: /add @username or /add https://x.com/username"
            )
            return
        handle = parse_handle_input(arg)
        if not handle:
            await self.reply(f"❌ Could not parse an X handle from: <code>{escape_html(arg)}</code>")
            return

        try:
            added = self.storage.add_watched_account(handle)
        except sqlite3.Error:
            logger.exception("add watched account failed", handle=handle)
            await self.reply(DB_ERROR_REPLY)
            return
        if added:
            status = f"✅ Now watching @{escape_html(handle)}"
        else:
            status = f"⚠️ @{escape_html(handle)} is already in your watchlist. Running wallet discovery..."
        initial = await self.reply(f"{status}\n\n<i>Searching for associated wallets...</i>")

        discovered: List[str] = []
        for wallet in sorted(await self.discover_wallets(handle)):
            if self.storage.save_wallet_mapping(handle, wallet, MAPPING_SOURCE_DISCOVERY):
                discovered.append(wallet)

        result = f"{status}\n\n"
        if discovered:
            result += (
                f"🕵️ <b>Discovered {len(discovered)} wallets:</b>\n"
                + "\n".join(f"<code>{w}</code>" for w in discovered)
                + "\n\n⚡ <i>Instant alerts active for these wallets!</i>"
            )
        else:
            result += "🔎 No historical wallets found. Alerts will activate once the first token is indexed."

        message_id = (initial or {}).get("message_id")
        if message_id is None:
            await self.reply(result)
        else:
            try:
                await self.client.edit_message_text(self.chat_id, int(message_id), result)
            except TELEGRAM_ERRORS as e:
                logger.warning("edit reply failed, sending new message", error=str(e))
                await self.reply(result)
        logger.info("watchlist add", handle=handle, added=added, wallets=len(discovered))

    async def cmd_remove(self, arg: str) -> None:
        if not arg:
            await self.reply("❌ Usage: /remove [handle]\nExample: /remove @username")
            return
        handle = parse_handle_input(arg)
        if not handle:
            await self.reply(f"❌ Could not parse an X handle from: <code>{escape_html(arg)}</code>")
            return
        try:
            removed = self.storage.remove_watched_account(handle)
        except sqlite3.Error:
            logger.exception("remove watched account failed", handle=handle)
            await self.reply(DB_ERROR_REPLY)
            return
        if removed:
            logger.info("watchlist remove", handle=handle)
            await self.reply(f"✅ Removed @{escape_html(handle)} from your watchlist.")
        else:
            await self.reply(f"⚠️ @{escape_html(handle)} was not found in your watchlist.")

    async def cmd_list(self, arg: str) -> None:
        try:
            accounts = self.storage.get_watched_accounts()
        except sqlite3.Error:
            logger.exception("list watched accounts failed")
            await self.reply(DB_ERROR_REPLY)
            return
        if not accounts:
            await self.reply("Your watchlist is empty. Use /add to add accounts.")
            return
        lines = [f"{i}. @{escape_html(a.handle)}" for i, a in enumerate(accounts, start=1)]
        await self.reply(f"👀 <b>Watched Accounts ({len(accounts)})</b>\n\n" + "\n".join(lines))

    async def cmd_status(self, arg: str) -> None:
        try:
            watched = self.storage.get_watched_count()
        except sqlite3.Error:
            logger.exception("watched count failed")
            await self.reply("❌ Error fetching status.")
            return

        def ws_state(family: str) -> str:
            return "🟢 Connected" if self.supervisor.family_connected(family) else "🔴 Reconnecting..."

        lines = [
            "📊 <b>KRAVEN Status</b>",
            "",
            f"⏱ <b>Uptime:</b> {format_uptime(time.time() - self.started_at)}",
            f"🔌 <b>Clanker WS:</b> {ws_state(PROTOCOL_CLANKER)}",
            f"🔌 <b>Doppler WS:</b> {ws_state(PROTOCOL_DOPPLER)}",
            f"⛓ <b>Last block:</b> {self.supervisor.last_height}",
            f"👀 <b>Watching:</b> {watched} account{'s' if watched != 1 else ''}",
            f"🚨 <b>Alerts sent:</b> {self.notifier.alerts_sent}",
        ]
        await self.reply("\n".join(lines))

    async def cmd_recent(self, arg: str) -> None:
        try:
            alerts = self.storage.get_recent_alerts(5)
        except sqlite3.Error:
            logger.exception("recent alerts failed")
            await self.reply(DB_ERROR_REPLY)
            return
        if not alerts:
            await self.reply("📭 No alerts have been sent yet.")
            return
        blocks = []
        for i, a in enumerate(alerts, start=1):
            when = time.strftime("%a, %d %b %Y %H:%M:%S GMT", time.gmtime(a.alerted_at))
            blocks.append(
                "\n".join(
                    [
                        f"<b>{i}. {escape_html(a.token_name)} ${escape_html(a.token_symbol)}</b>",
                        f"   📄 CA: <code>{a.contract_address}</code>",
                        f"   🐦 @{escape_html(a.handle)} · {escape_html(a.platform)}",
                        f"   ⏰ {when}",
                    ]
                )
            )
        await self.reply("📋 <b>Recent Alerts</b>\n\n" + "\n\n".join(blocks))

    async def cmd_help(self, arg: str) -> None:
        await self.reply(HELP_TEXT)

    async def poll_loop(self) -> None:
        offset: Optional[int] = None
        while True:
            try:
                updates = await self.client.get_updates(offset, timeout_sec=self.poll_timeout_sec)
            except TELEGRAM_ERRORS as e:
                logger.warning("telegram polling failed", error=f"{type(e).__name__}: {e}")
                await asyncio.sleep(5)
                continue
            for update in updates:
                offset = int(update.get("update_id", 0)) + 1
                message = update.get("message") or {}
                text = message.get("text")
                if not text:
                    continue
                chat_id = str((message.get("chat") or {}).get("id", ""))
                try:
                    await self.handle_message(chat_id, text)
                except Exception:
                    logger.exception("command handler failed", text=text)
