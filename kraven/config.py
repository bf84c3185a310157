import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kraven.chain import CLANKER_FACTORY_ADDRESSES, DOPPLER_AIRLOCK_ADDRESS, normalize_address
from kraven.resolvers import BANKR_API_URL, CLANKER_API_URL, CLANKER_SEARCH_URL, DOPPLER_API_URL

LOG_LEVELS = {"debug", "info", "warning", "error"}


@dataclass
class AppConfig:
    ws_rpc_url: str
    telegram_bot_token: str
    telegram_chat_id: str
    chain_id: int
    sqlite_path: str
    clanker_factory_addresses: List[str]
    doppler_airlock_address: Optional[str]
    clanker_api_url: str
    clanker_search_url: str
    doppler_api_url: str
    bankr_api_url: str
    resolver_max_attempts: int
    resolver_retry_delay_ms: int
    resolver_timeout_sec: int
    fast_path_timeout_sec: float
    ws_connect_timeout_sec: int
    ws_request_timeout_sec: int
    probe_interval_sec: int
    reconnect_delay_sec: int
    pipeline_workers: int
    log_level: str
    api_host: str
    api_port: int

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def _positive_int(raw: Dict[str, Any], key: str, default: int) -> int:
    value = int(raw.get(key, default))
    if value <= 0:
        raise ValueError(f"{key} must be >= 1")
    return value


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return parse_config(raw)


def parse_config(raw: Dict[str, Any]) -> AppConfig:
    if not isinstance(raw, dict):
        raise ValueError("config root must be a JSON object")

    ws_rpc_url = str(raw.get("WS_RPC_URL", "")).strip()
    if not ws_rpc_url:
        raise ValueError("WS_RPC_URL is required")
    if not ws_rpc_url.startswith(("ws://", "wss://")):
        raise ValueError(f"WS_RPC_URL must be a ws:// or wss:// url: {ws_rpc_url}")

    factories_raw = raw.get("CLANKER_FACTORY_ADDRESSES", list(CLANKER_FACTORY_ADDRESSES))
    if isinstance(factories_raw, str):
        factories_raw = [x for x in factories_raw.split(",") if x.strip()]
    clanker_factory_addresses = [normalize_address(x) for x in factories_raw]

    airlock_raw = raw.get("DOPPLER_AIRLOCK_ADDRESS", DOPPLER_AIRLOCK_ADDRESS)
    doppler_airlock_address = normalize_address(airlock_raw) if airlock_raw else None

    if not clanker_factory_addresses and not doppler_airlock_address:
        raise ValueError("at least one factory contract must be configured")

    log_level = str(raw.get("LOG_LEVEL", "info")).lower()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}")

    fast_path_timeout_sec = float(raw.get("FAST_PATH_TIMEOUT_SEC", 0.5))
    if fast_path_timeout_sec <= 0:
        raise ValueError("FAST_PATH_TIMEOUT_SEC must be > 0")

    resolver_retry_delay_ms = int(raw.get("RESOLVER_RETRY_DELAY_MS", 2000))
    if resolver_retry_delay_ms < 0:
        raise ValueError("RESOLVER_RETRY_DELAY_MS must be >= 0")

    api_port = int(raw.get("API_PORT", 0))
    if api_port < 0 or api_port > 65535:
        raise ValueError("API_PORT must be in [0, 65535]")

    return AppConfig(
        ws_rpc_url=ws_rpc_url,
        telegram_bot_token=str(raw.get("TELEGRAM_BOT_TOKEN", "")).strip(),
        telegram_chat_id=str(raw.get("TELEGRAM_CHAT_ID", "")).strip(),
        chain_id=int(raw.get("CHAIN_ID", 8453)),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/kraven.db")),
        clanker_factory_addresses=clanker_factory_addresses,
        doppler_airlock_address=doppler_airlock_address,
        clanker_api_url=str(raw.get("CLANKER_API_URL", CLANKER_API_URL)),
        clanker_search_url=str(raw.get("CLANKER_SEARCH_URL", CLANKER_SEARCH_URL)),
        doppler_api_url=str(raw.get("DOPPLER_API_URL", DOPPLER_API_URL)),
        bankr_api_url=str(raw.get("BANKR_API_URL", BANKR_API_URL)),
        resolver_max_attempts=_positive_int(raw, "RESOLVER_MAX_ATTEMPTS", 3),
        resolver_retry_delay_ms=resolver_retry_delay_ms,
        resolver_timeout_sec=_positive_int(raw, "RESOLVER_TIMEOUT_SEC", 10),
        fast_path_timeout_sec=fast_path_timeout_sec,
        ws_connect_timeout_sec=_positive_int(raw, "WS_CONNECT_TIMEOUT_SEC", 30),
        ws_request_timeout_sec=_positive_int(raw, "WS_REQUEST_TIMEOUT_SEC", 10),
        probe_interval_sec=_positive_int(raw, "PROBE_INTERVAL_SEC", 30),
        reconnect_delay_sec=_positive_int(raw, "RECONNECT_DELAY_SEC", 5),
        pipeline_workers=_positive_int(raw, "PIPELINE_WORKERS", 4),
        log_level=log_level,
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=api_port,
    )
