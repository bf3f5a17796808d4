"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from marketplace.chain import ChainClient, InMemoryChainClient, Web3ChainClient
from marketplace.config import get_settings
from marketplace.db import DbClient, InMemoryDbClient, SqlDbClient
from marketplace.monitor import TransactionMonitor
from marketplace.privy import PrivyClient

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_chain_client: ChainClient | None = None
_transaction_monitor: TransactionMonitor | None = None
_privy_client: PrivyClient | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests and monitor ticks.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_chain_client() -> ChainClient:
    global _chain_client
    if _chain_client:
        return _chain_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.web3_provider_url:
        logger.warning(
            "WEB3_PROVIDER_URL not set; using an empty in-memory chain"
        )
        _chain_client = InMemoryChainClient()
    else:
        _chain_client = Web3ChainClient(
            settings.web3_provider_url,
            timeout=settings.web3_request_timeout_seconds,
        )
    return _chain_client


def get_transaction_monitor() -> TransactionMonitor:
    """
    Return the process-wide monitor; its registry is the only record of
    in-flight monitoring.
    """
    global _transaction_monitor
    if _transaction_monitor:
        return _transaction_monitor

    settings = get_settings()
    _transaction_monitor = TransactionMonitor(
        get_db_client(),
        get_chain_client(),
        required_confirmations=settings.required_confirmations,
        poll_interval=settings.monitor_poll_interval_seconds,
        timeout=settings.monitor_timeout_seconds,
    )
    return _transaction_monitor


def get_privy_client() -> PrivyClient:
    global _privy_client
    if _privy_client:
        return _privy_client

    settings = get_settings()
    _privy_client = PrivyClient(
        app_id=settings.privy_app_id,
        app_secret=settings.privy_app_secret,
        verification_key=settings.privy_verification_key,
        api_base=settings.privy_api_base,
    )
    return _privy_client
