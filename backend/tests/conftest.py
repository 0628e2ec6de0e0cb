"""Shared fixtures: every test gets its own SQLite database file."""

import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from creditflow.core.database import create_engine, create_session_maker, init_models
from creditflow.modules.job.service import JobStateMachine
from creditflow.modules.ledger.models import BillingEventType
from creditflow.modules.ledger.service import CreditLedger
from creditflow.modules.webhook.service import WebhookIngestor


@asynccontextmanager
async def _scratch_database() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    with tempfile.TemporaryDirectory() as directory:
        engine = create_engine(
            f"sqlite+aiosqlite:///{Path(directory) / 'creditflow.db'}",
            poolclass=NullPool,
        )
        await init_models(engine)
        try:
            yield create_session_maker(engine)
        finally:
            await engine.dispose()


@pytest.fixture(scope="session")
def scratch_database():
    """Factory for throwaway databases, usable inside hypothesis examples."""
    return _scratch_database


@pytest.fixture
async def session_maker() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    async with _scratch_database() as maker:
        yield maker


@pytest.fixture
def ledger(session_maker) -> CreditLedger:
    return CreditLedger(
        session_maker,
        signup_credits={"starter": 0, "growth": 50, "pro": 200},
        default_signup_credits=0,
        monthly_grants={"starter": 5, "growth": 50, "pro": 200},
    )


@pytest.fixture
def jobs(session_maker, ledger) -> JobStateMachine:
    return JobStateMachine(session_maker, ledger, max_attempts=3, lease_seconds=300)


@pytest.fixture
def ingestor(ledger) -> WebhookIngestor:
    return WebhookIngestor(ledger)


async def fund(ledger: CreditLedger, account_id: str, credits: int) -> None:
    """Create a starter account holding ``credits`` via an adjustment."""
    await ledger.ensure_account(account_id, email=f"{account_id}@example.com")
    if credits > 0:
        await ledger.credit(account_id, credits, BillingEventType.ADJUSTMENT, {"note": "test funding"})


@pytest.fixture
def funded(ledger):
    """Coroutine factory creating funded accounts."""
    async def _funded(account_id: str, credits: int) -> str:
        await fund(ledger, account_id, credits)
        return account_id
    return _funded
