import asyncio
import html
import time
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from kraven.models import SOURCE_WALLET_CACHE, ResolvedDeployment

logger = structlog.get_logger()

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramError(RuntimeError):
    pass


class TelegramClient:
    def __init__(self, token: str, api_url: str = TELEGRAM_API_URL, timeout_sec: int = 45):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "TelegramClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, payload: Dict[str, Any]) -> Any:
        if not self._session:
            raise RuntimeError("Telegram session is not initialized")
        url = f"{self.api_url}/bot{self.token}/{method}"
        async with self._session.post(url, json=payload) as resp:
            data = await resp.json(content_type=None)
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TelegramError(f"{method} failed: {description or 'telegram_error'}")
        return data.get("result")

    async def send_message(self, chat_id: str, text: str, parse_mode: Optional[str] = "HTML") -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self.call("sendMessage", payload)

    async def edit_message_text(
        self, chat_id: str, message_id: int, text: str, parse_mode: Optional[str] = "HTML"
    ) -> Any:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self.call("editMessageText", payload)

    async def get_updates(self, offset: Optional[int], timeout_sec: int = 30) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {"timeout": timeout_sec, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        result = await self.call("getUpdates", payload)
        return result if isinstance(result, list) else []


def escape_html(text: Any) -> str:
    return html.escape(str(text), quote=False)


def format_alert(resolved: ResolvedDeployment, now: Optional[float] = None) -> str:
    token = resolved.token
    handle = escape_html(resolved.handle)
    when = time.strftime("%a, %d %b %Y %H:%M:%S GMT", time.gmtime(now if now is not None else time.time()))
    lines = [
        "🚨 <b>Alpha Alert</b>",
        "",
        f"💊 <b>Token:</b> {escape_html(token.name)} ${escape_html(token.symbol)}",
        f"📄 <b>CA:</b> <code>{token.contract_address}</code>",
        f"🏭 <b>Platform:</b> {escape_html(resolved.platform_label)}",
        f'🐦 <b>Deployer:</b> @{handle} → <a href="https://x.com/{handle}">https://x.com/{handle}</a>',
    ]
    if resolved.deployer_address:
        lines.append(f"👛 <b>Wallet:</b> <code>{resolved.deployer_address}</code>")
    if resolved.source == SOURCE_WALLET_CACHE:
        lines.append("⚡ <b>Instant match</b> (known wallet)")
    lines.append(f'🔗 <b>View:</b> <a href="{resolved.view_url}">{resolved.view_url}</a>')
    lines.append(f"⏰ <b>Time:</b> {when}")
    return "\n".join(lines)


class TelegramNotifier:
    def __init__(self, client: Optional[TelegramClient], chat_id: str):
        self.client = client
        self.chat_id = chat_id
        self.alerts_sent = 0
        self._send_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.client is not None and bool(self.chat_id)

    async def send_status_message(self, text: str) -> bool:
        if not self.enabled:
            logger.info("status message (telegram disabled)", text=text)
            return False
        try:
            async with self._send_lock:
                await self.client.send_message(self.chat_id, text)
        except (aiohttp.ClientError, asyncio.TimeoutError, TelegramError, ValueError) as e:
            logger.error("telegram send failed", error=f"{type(e).__name__}: {e}")
            return False
        return True

    async def send_alert(self, resolved: ResolvedDeployment) -> bool:
        logger.info(
            "sending alert",
            contract=resolved.token.contract_address,
            handle=resolved.handle,
            platform=resolved.platform_label,
            source=resolved.source,
        )
        sent = await self.send_status_message(format_alert(resolved))
        if sent:
            self.alerts_sent += 1
        return sent
