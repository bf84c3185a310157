from dataclasses import dataclass, field
from typing import Any, Dict, Optional

PROTOCOL_CLANKER = "clanker"
PROTOCOL_DOPPLER = "doppler"
PROTOCOL_FAMILIES = (PROTOCOL_CLANKER, PROTOCOL_DOPPLER)

SOURCE_WALLET_CACHE = "wallet-cache"
SOURCE_INDEXER = "indexer"

UNKNOWN_NAME = "Unknown"
UNKNOWN_SYMBOL = "UNKNOWN"

PLATFORM_CLANKER = "via Clanker"
PLATFORM_DOPPLER = "via Doppler"
PLATFORM_BANKR = "via Bankr"
PLATFORM_WALLET_CACHE = "via Wallet Cache"

MAPPING_SOURCE_LEARNED = "learned"
MAPPING_SOURCE_DISCOVERY = "discovery"


@dataclass(frozen=True)
class DeploymentEvent:
    contract_address: str
    deployer_address: Optional[str]
    transaction_hash: str
    protocol_family: str
    factory_address: str = ""
    block_number: int = 0
    log_name: Optional[str] = None
    log_symbol: Optional[str] = None


@dataclass
class TokenRecord:
    contract_address: str
    name: str = UNKNOWN_NAME
    symbol: str = UNKNOWN_SYMBOL
    raw_metadata: Dict[str, Any] = field(default_factory=dict)
    handle: Optional[str] = None
    platform_label: str = ""
    creator: Optional[str] = None
    transaction_hash: Optional[str] = None

    def __post_init__(self) -> None:
        self.name = clean_label(self.name, UNKNOWN_NAME)
        self.symbol = clean_label(self.symbol, UNKNOWN_SYMBOL)


@dataclass(frozen=True)
class ResolvedDeployment:
    token: TokenRecord
    handle: str
    platform_label: str
    source: str
    protocol_family: str
    deployer_address: Optional[str] = None
    transaction_hash: Optional[str] = None

    @property
    def view_url(self) -> str:
        if self.protocol_family == PROTOCOL_DOPPLER:
            return f"https://app.doppler.lol/token/{self.token.contract_address}"
        return f"https://clanker.world/clanker/{self.token.contract_address}"


@dataclass(frozen=True)
class WalletMapping:
    handle: str
    wallet_address: str
    source: str
    discovered_at: int


@dataclass(frozen=True)
class WatchlistEntry:
    handle: str
    added_at: int


@dataclass(frozen=True)
class AlertHistoryEntry:
    token_name: str
    token_symbol: str
    contract_address: str
    handle: str
    platform: str
    view_url: str
    tx_hash: str
    alerted_at: int


def clean_label(value: Any, default: str) -> str:
    if not isinstance(value, str):
        return default
    value = value.strip()
    return value or default
