"""Turns one deployment event into an alert decision.

Every event either ends in a single alert or is suppressed. Retries happen
only inside the resolvers. The wallet cache is always consulted before any
indexer is asked for social data.
"""

import asyncio
from typing import Dict, Iterable, Mapping, Optional, Protocol, Set, Tuple

import structlog

from kraven.handles import extract_handle
from kraven.models import (
    MAPPING_SOURCE_LEARNED,
    PLATFORM_WALLET_CACHE,
    PROTOCOL_DOPPLER,
    SOURCE_INDEXER,
    SOURCE_WALLET_CACHE,
    DeploymentEvent,
    ResolvedDeployment,
    TokenRecord,
)
from kraven.resolvers import MetadataResolver

logger = structlog.get_logger()


class DeploymentStore(Protocol):
    def is_handle_watched(self, handle: str) -> bool: ...

    def get_handle_by_wallet(self, wallet_address: str) -> Optional[str]: ...

    def save_wallet_mapping(self, handle: str, wallet_address: str, source: str) -> bool: ...

    def save_alert_history(self, resolved: ResolvedDeployment) -> None: ...


class AlertSink(Protocol):
    async def send_alert(self, resolved: ResolvedDeployment) -> bool: ...


class ResolutionPipeline:
    def __init__(
        self,
        storage: DeploymentStore,
        notifier: AlertSink,
        primary_resolvers: Mapping[str, MetadataResolver],
        overlay_resolver: Optional[MetadataResolver] = None,
        overlay_families: Iterable[str] = (PROTOCOL_DOPPLER,),
        fast_path_timeout_sec: float = 0.5,
    ):
        self.storage = storage
        self.notifier = notifier
        self.primary_resolvers = dict(primary_resolvers)
        self.overlay_resolver = overlay_resolver
        self.overlay_families: Set[str] = set(overlay_families)
        self.fast_path_timeout_sec = fast_path_timeout_sec
        self.stats: Dict[str, int] = {
            "events": 0,
            "fast_path": 0,
            "indexer_path": 0,
            "no_handle": 0,
            "not_watched": 0,
            "matched": 0,
            "failed": 0,
            "history_errors": 0,
        }

    async def handle_event(self, event: DeploymentEvent) -> Optional[ResolvedDeployment]:
        self.stats["events"] += 1
        log = logger.bind(
            contract=event.contract_address,
            family=event.protocol_family,
            tx=event.transaction_hash,
        )
        try:
            resolved = await self.resolve(event)
            if resolved is None:
                return None
            await self.deliver(resolved)
        except Exception:
            self.stats["failed"] += 1
            log.exception("event handling failed, suppressing")
            return None
        return resolved

    async def resolve(self, event: DeploymentEvent) -> Optional[ResolvedDeployment]:
        if event.deployer_address:
            cached_handle = self.storage.get_handle_by_wallet(event.deployer_address)
            if cached_handle:
                return await self._resolve_from_wallet_cache(event, cached_handle)
        return await self._resolve_from_indexers(event)

    async def _resolve_from_wallet_cache(self, event: DeploymentEvent, handle: str) -> ResolvedDeployment:
        self.stats["fast_path"] += 1
        self.stats["matched"] += 1
        logger.info(
            "wallet cache match",
            contract=event.contract_address,
            wallet=event.deployer_address,
            handle=handle,
        )
        token = await self._best_effort_token(event)
        return ResolvedDeployment(
            token=token,
            handle=handle,
            platform_label=PLATFORM_WALLET_CACHE,
            source=SOURCE_WALLET_CACHE,
            protocol_family=event.protocol_family,
            deployer_address=event.deployer_address,
            transaction_hash=event.transaction_hash,
        )

    async def _best_effort_token(self, event: DeploymentEvent) -> TokenRecord:
        if event.log_name or event.log_symbol:
            return token_from_event(event)
        resolver = self.primary_resolvers.get(event.protocol_family)
        if resolver is None:
            return token_from_event(event)
        try:
            token = await asyncio.wait_for(
                resolver.fetch(event.contract_address, attempts=1),
                timeout=self.fast_path_timeout_sec,
            )
        except asyncio.TimeoutError:
            logger.info("token name lookup timed out", contract=event.contract_address)
            token = None
        except Exception as e:
            logger.warning("token name lookup failed", contract=event.contract_address, error=str(e))
            token = None
        if token is None:
            return token_from_event(event)
        return TokenRecord(
            contract_address=event.contract_address,
            name=token.name,
            symbol=token.symbol,
            raw_metadata=token.raw_metadata,
            platform_label=PLATFORM_WALLET_CACHE,
            creator=token.creator,
            transaction_hash=event.transaction_hash,
        )

    async def _resolve_from_indexers(self, event: DeploymentEvent) -> Optional[ResolvedDeployment]:
        self.stats["indexer_path"] += 1
        resolver = self.primary_resolvers[event.protocol_family]
        token = await resolver.fetch(event.contract_address)
        if token is None:
            logger.warning("no primary metadata", resolver=resolver.name, contract=event.contract_address)

        handle, platform = primary_attribution(token)

        if event.protocol_family in self.overlay_families and self.overlay_resolver is not None:
            social = await self.overlay_resolver.fetch(event.contract_address)
            if social is not None and social.handle:
                handle, platform = social.handle, social.platform_label
                if token is None:
                    token = social

        if not handle:
            self.stats["no_handle"] += 1
            logger.info("no social context, skipping", contract=event.contract_address)
            return None

        if not self.storage.is_handle_watched(handle):
            self.stats["not_watched"] += 1
            logger.info("deployer not on watchlist, skipping", contract=event.contract_address, handle=handle)
            return None

        self.stats["matched"] += 1
        logger.info("watchlist match", contract=event.contract_address, handle=handle, platform=platform)
        if event.deployer_address:
            self.storage.save_wallet_mapping(handle, event.deployer_address, MAPPING_SOURCE_LEARNED)

        return ResolvedDeployment(
            token=token if token is not None else token_from_event(event),
            handle=handle,
            platform_label=platform,
            source=SOURCE_INDEXER,
            protocol_family=event.protocol_family,
            deployer_address=event.deployer_address,
            transaction_hash=event.transaction_hash,
        )

    async def deliver(self, resolved: ResolvedDeployment) -> None:
        await self.notifier.send_alert(resolved)
        try:
            self.storage.save_alert_history(resolved)
        except Exception:
            self.stats["history_errors"] += 1
            logger.exception("alert history not saved", contract=resolved.token.contract_address)


def primary_attribution(token: Optional[TokenRecord]) -> Tuple[Optional[str], str]:
    if token is None:
        return None, ""
    handle = token.handle or extract_handle(token.raw_metadata)
    return handle, token.platform_label


def token_from_event(event: DeploymentEvent) -> TokenRecord:
    return TokenRecord(
        contract_address=event.contract_address,
        name=event.log_name,
        symbol=event.log_symbol,
        transaction_hash=event.transaction_hash,
    )
