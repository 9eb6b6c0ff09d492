"""FastAPI dependency providers for stores and external clients.

External clients are built lazily and cached per process; tests replace
them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from functools import lru_cache
from typing import Iterator, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal, get_db
from app.services.ingestion.feed_client import FeedClient
from app.services.ingestion.scanner import IntakeScanner
from app.services.settlement.authorization import AuthorizationVerifier
from app.services.settlement.chain_client import ChainClient
from app.services.settlement.claims import ClaimService
from app.services.store.base import PaymentStore
from app.services.store.sql_store import SqlPaymentStore


def get_store(db: Session = Depends(get_db)) -> PaymentStore:
    return SqlPaymentStore(db)


@lru_cache(maxsize=1)
def get_feed_client() -> FeedClient:
    from app.services.ingestion.twitter_feed import TwitterFeedClient

    return TwitterFeedClient.from_bearer_token(
        settings.twitter_bearer_token,
        settings.feed_query,
        settings.feed_page_size,
    )


@lru_cache(maxsize=1)
def get_chain_client() -> ChainClient:
    from app.services.settlement.solana_client import SolanaChainClient

    return SolanaChainClient.from_settings(settings)


def build_scanner(store: PaymentStore, feed: Optional[FeedClient] = None) -> IntakeScanner:
    return IntakeScanner(
        store,
        feed,
        bot_handle=settings.bot_handle,
        duplicate_window=timedelta(minutes=settings.duplicate_window_minutes),
    )


def get_scanner(
    store: PaymentStore = Depends(get_store),
) -> IntakeScanner:
    """Scanner without a feed; enough for manual ingestion."""
    return build_scanner(store)


def get_polling_scanner(
    store: PaymentStore = Depends(get_store),
    feed: FeedClient = Depends(get_feed_client),
) -> IntakeScanner:
    return build_scanner(store, feed)


def get_claim_service(
    store: PaymentStore = Depends(get_store),
    chain: ChainClient = Depends(get_chain_client),
) -> ClaimService:
    verifier = AuthorizationVerifier(
        chain,
        settings.vault_public_key,
        settings.usdc_mint,
        decimals=settings.token_decimals,
    )
    return ClaimService(
        store,
        chain,
        verifier,
        confirmation_timeout=settings.confirmation_timeout_seconds,
        attempt_expiry=timedelta(seconds=settings.attempt_expiry_seconds),
    )


@contextmanager
def scheduled_scanner() -> Iterator[IntakeScanner]:
    """Scanner with its own session, for the background scheduler."""
    db = SessionLocal()
    try:
        yield build_scanner(SqlPaymentStore(db), get_feed_client())
    finally:
        db.close()
