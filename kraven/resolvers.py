import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

import aiohttp
import structlog

from kraven.chain import try_normalize_address
from kraven.handles import extract_handle, normalize_handle
from kraven.models import (
    PLATFORM_BANKR,
    PLATFORM_CLANKER,
    PLATFORM_DOPPLER,
    TokenRecord,
)

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SEC = 2.0
DEFAULT_TIMEOUT_SEC = 10

CLANKER_API_URL = "https://www.clanker.world/api/tokens/get-clanker-by-address"
CLANKER_SEARCH_URL = "https://www.clanker.world/api/tokens"
DOPPLER_API_URL = "https://indexer.doppler.lol/search"
BANKR_API_URL = "https://api.bankr.chat/launches"

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def _first_str(record: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _addresses(records: Iterable[Dict[str, Any]], *keys: str) -> Set[str]:
    out: Set[str] = set()
    for record in records:
        if not isinstance(record, dict):
            continue
        addr = try_normalize_address(_first_str(record, *keys))
        if addr:
            out.add(addr)
    return out


class MetadataResolver:
    name = "resolver"
    platform_label = ""
    refusal_statuses: Tuple[int, ...] = ()

    def __init__(
        self,
        base_url: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_sec: float = DEFAULT_RETRY_DELAY_SEC,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.retry_delay_sec = retry_delay_sec
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "MetadataResolver":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        if not self._session:
            raise RuntimeError(f"{self.name} session is not initialized")
        async with self._session.get(url, params=params) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)

    async def with_retry(
        self,
        what: str,
        subject: str,
        request: Callable[[], Awaitable[Any]],
        accept: Callable[[Any], Optional[T]],
        attempts: Optional[int] = None,
    ) -> Optional[T]:
        budget = max(1, attempts or self.max_attempts)
        for attempt in range(1, budget + 1):
            try:
                payload = await request()
            except TRANSPORT_ERRORS as e:
                refused = isinstance(e, aiohttp.ClientResponseError) and e.status in self.refusal_statuses
                log = logger.warning if refused else logger.error
                log(
                    "resolver request failed",
                    resolver=self.name,
                    what=what,
                    subject=subject,
                    attempt=attempt,
                    attempts=budget,
                    error=f"{type(e).__name__}: {e}",
                )
            else:
                result = accept(payload)
                if result is not None:
                    return result
                logger.warning(
                    "resolver returned nothing",
                    resolver=self.name,
                    what=what,
                    subject=subject,
                    attempt=attempt,
                    attempts=budget,
                )
            if attempt < budget:
                await self._sleep(self.retry_delay_sec)
        return None

    async def fetch(self, contract_address: str, attempts: Optional[int] = None) -> Optional[TokenRecord]:
        contract_address = contract_address.lower()
        token = await self.with_retry(
            "token",
            contract_address,
            lambda: self.request_token(contract_address),
            lambda payload: self.parse_token(contract_address, payload),
            attempts=attempts,
        )
        if token is not None:
            logger.info(
                "fetched token metadata",
                resolver=self.name,
                contract=contract_address,
                token_name=token.name,
                symbol=token.symbol,
                handle=token.handle,
                platform=token.platform_label,
            )
        return token

    async def discover_wallets(self, handle: str) -> Set[str]:
        handle = normalize_handle(handle) or ""
        if not handle:
            return set()
        wallets = await self.with_retry(
            "wallets",
            handle,
            lambda: self.request_launches(handle),
            lambda payload: self.parse_wallets(handle, payload),
        )
        wallets = wallets or set()
        logger.info("discovered wallets", resolver=self.name, handle=handle, count=len(wallets))
        return wallets

    async def request_token(self, contract_address: str) -> Any:
        raise NotImplementedError

    def parse_token(self, contract_address: str, payload: Any) -> Optional[TokenRecord]:
        raise NotImplementedError

    async def request_launches(self, handle: str) -> Any:
        raise NotImplementedError

    def parse_wallets(self, handle: str, payload: Any) -> Optional[Set[str]]:
        raise NotImplementedError


class ClankerResolver(MetadataResolver):
    name = "clanker"
    platform_label = PLATFORM_CLANKER

    def __init__(self, base_url: str = CLANKER_API_URL, search_url: str = CLANKER_SEARCH_URL, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.search_url = search_url.rstrip("/")

    async def request_token(self, contract_address: str) -> Any:
        return await self.get_json(self.base_url, params={"address": contract_address})

    def parse_token(self, contract_address: str, payload: Any) -> Optional[TokenRecord]:
        if not isinstance(payload, dict) or not payload:
            return None
        data = payload.get("token", payload)
        if not isinstance(data, dict) or not data:
            return None
        return TokenRecord(
            contract_address=contract_address,
            name=data.get("name"),
            symbol=data.get("symbol"),
            raw_metadata=data,
            handle=extract_handle(data),
            platform_label=detect_clanker_platform(data),
            creator=try_normalize_address(_first_str(data, "msg_sender", "creator", "admin")),
            transaction_hash=_first_str(data, "tx_hash", "txHash"),
        )

    async def request_launches(self, handle: str) -> Any:
        return await self.get_json(self.search_url, params={"search": handle})

    def parse_wallets(self, handle: str, payload: Any) -> Optional[Set[str]]:
        rows = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            return None
        return _addresses(rows, "msg_sender", "creator", "admin")


def detect_clanker_platform(data: Dict[str, Any]) -> str:
    for key in ("interface", "platform", "source", "type", "cast_hash"):
        value = data.get(key)
        if isinstance(value, str) and "bankr" in value.lower():
            return PLATFORM_BANKR
    social_context = data.get("social_context")
    if isinstance(social_context, dict):
        for value in social_context.values():
            if isinstance(value, str) and "bankr" in value.lower():
                return PLATFORM_BANKR
    return PLATFORM_CLANKER


class DopplerResolver(MetadataResolver):
    name = "doppler"
    platform_label = PLATFORM_DOPPLER

    def __init__(self, base_url: str = DOPPLER_API_URL, chain_id: int = 8453, **kwargs: Any):
        super().__init__(base_url, **kwargs)
        self.chain_id = chain_id

    async def request_token(self, contract_address: str) -> Any:
        return await self.get_json(
            f"{self.base_url}/{contract_address}", params={"chain_ids": str(self.chain_id)}
        )

    def parse_token(self, contract_address: str, payload: Any) -> Optional[TokenRecord]:
        if not isinstance(payload, list) or not payload:
            return None
        rows = [x for x in payload if isinstance(x, dict)]
        if not rows:
            return None
        data = next(
            (x for x in rows if str(x.get("address") or "").lower() == contract_address),
            rows[0],
        )
        handle = None
        metadata = data.get("metadata")
        if isinstance(metadata, dict):
            handle = normalize_handle(_first_str(metadata, "x", "twitter"))
        return TokenRecord(
            contract_address=contract_address,
            name=data.get("name"),
            symbol=data.get("symbol"),
            raw_metadata=data,
            handle=handle,
            platform_label=self.platform_label,
            creator=try_normalize_address(data.get("creator")),
        )

    async def request_launches(self, handle: str) -> Any:
        return await self.get_json(f"{self.base_url}/{handle}", params={"chain_ids": str(self.chain_id)})

    def parse_wallets(self, handle: str, payload: Any) -> Optional[Set[str]]:
        if not isinstance(payload, list):
            return None
        return _addresses(payload, "creator")


class BankrResolver(MetadataResolver):
    name = "bankr"
    platform_label = PLATFORM_BANKR
    refusal_statuses = (403,)

    def __init__(self, base_url: str = BANKR_API_URL, **kwargs: Any):
        super().__init__(base_url, **kwargs)

    async def request_token(self, contract_address: str) -> Any:
        return await self.get_json(self.base_url)

    def parse_token(self, contract_address: str, payload: Any) -> Optional[TokenRecord]:
        if not isinstance(payload, list) or not payload:
            return None
        for launch in payload:
            if not isinstance(launch, dict):
                continue
            addr = str(launch.get("token_address") or launch.get("address") or "").lower()
            if addr != contract_address:
                continue
            return TokenRecord(
                contract_address=contract_address,
                name=_first_str(launch, "token_name", "name"),
                symbol=_first_str(launch, "token_symbol", "symbol"),
                raw_metadata=launch,
                handle=launch_handle(launch),
                platform_label=self.platform_label,
                creator=try_normalize_address(_first_str(launch, "deployer", "creator", "msg_sender")),
            )
        return None

    async def request_launches(self, handle: str) -> Any:
        return await self.get_json(self.base_url)

    def parse_wallets(self, handle: str, payload: Any) -> Optional[Set[str]]:
        if not isinstance(payload, list):
            return None
        matching: List[Dict[str, Any]] = [
            launch for launch in payload if isinstance(launch, dict) and launch_handle(launch) == handle
        ]
        return _addresses(matching, "deployer", "creator", "msg_sender")


def launch_handle(launch: Dict[str, Any]) -> Optional[str]:
    return normalize_handle(_first_str(launch, "x_handle", "twitter_handle", "deployer_handle"))
