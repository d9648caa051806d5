"""
Pytest configuration for the ripplefund gateway tests.
"""
from __future__ import annotations

import asyncio
import os
import tempfile
from typing import Callable, List, Optional

import pytest

# Settings read the environment at import time
os.environ["XUMM_MODE"] = "mock"
os.environ["BACKEND_MODE"] = "mock"
os.environ["POLL_INTERVAL_SECONDS"] = "0.01"
os.environ["POLL_INITIAL_DELAY_SECONDS"] = "0.01"
os.environ["MOCK_SIGN_AFTER_POLLS"] = "2"
os.environ["API_KEY"] = ""
os.environ["PENDING_STORE_PATH"] = os.path.join(tempfile.mkdtemp(prefix="ripplefund-"), "pending.json")

from ripplefund.config import Settings  # noqa: E402
from ripplefund.models import (  # noqa: E402
    PayloadKind,
    PayloadOutcome,
    PayloadRequest,
    PayloadStatus,
    Session,
)
from ripplefund.resumption import MemoryStorage, ResumptionStore  # noqa: E402

FUNDER_ADDRESS = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
BORROWER_ADDRESS = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"


def pending() -> PayloadStatus:
    return PayloadStatus()


def transport_error() -> PayloadStatus:
    return PayloadStatus(outcome=PayloadOutcome.TRANSPORT_ERROR)


def signed(account: str = "rXYZ", txid: Optional[str] = "A1B2C3") -> PayloadStatus:
    return PayloadStatus(
        resolved=True, outcome=PayloadOutcome.SIGNED, signer_account=account, txid=txid
    )


def cancelled() -> PayloadStatus:
    return PayloadStatus(resolved=True, outcome=PayloadOutcome.CANCELLED)


def expired() -> PayloadStatus:
    return PayloadStatus(resolved=True, outcome=PayloadOutcome.EXPIRED)


class ScriptedXummService:
    """Stands in for XummService, answering status reads from a script."""

    def __init__(self, statuses: Optional[List[PayloadStatus]] = None, identifier: str = "abc"):
        self.statuses = list(statuses or [])
        self.identifier = identifier
        self.created: List[PayloadKind] = []
        self.created_params: list = []
        self.status_calls: List[str] = []
        self.invalidated: List[str] = []
        self.create_error: Optional[Exception] = None
        self.before_status: Optional[Callable] = None

    def sign_url(self, identifier: str) -> str:
        return f"xumm://{identifier}"

    async def create_request(self, kind, params=None) -> PayloadRequest:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(kind)
        self.created_params.append(params)
        return PayloadRequest(
            identifier=self.identifier,
            kind=kind,
            deep_link=self.sign_url(self.identifier),
            qr_payload=self.sign_url(self.identifier),
        )

    async def get_status(self, identifier: str) -> PayloadStatus:
        self.status_calls.append(identifier)
        if self.before_status is not None:
            await self.before_status(len(self.status_calls))
        if self.statuses:
            return self.statuses.pop(0)
        return pending()

    async def invalidate(self, identifier: str) -> bool:
        self.invalidated.append(identifier)
        return True

    async def aclose(self) -> None:
        return None


class RecordingSleep:
    """Replacement for asyncio.sleep that only records the requested delays."""

    def __init__(self, hook: Optional[Callable] = None):
        self.delays: List[float] = []
        self.hook = hook

    @property
    def elapsed(self) -> float:
        return sum(self.delays)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.hook is not None:
            await self.hook(len(self.delays))
        await asyncio.sleep(0)


class RecordingHandler:
    def __init__(self):
        self.calls: list = []

    async def on_signed(self, identifier, status):
        self.calls.append(("signed", identifier, status.signer_account))

    async def on_cancelled(self, identifier):
        self.calls.append(("cancelled", identifier))

    async def on_expired(self, identifier):
        self.calls.append(("expired", identifier))

    async def on_timeout(self, identifier, attempts):
        self.calls.append(("timeout", identifier, attempts))

    async def on_error(self, identifier, error):
        self.calls.append(("error", identifier, type(error).__name__))


class FakeSessions:
    def __init__(self, error: Optional[Exception] = None):
        self.calls: List[str] = []
        self.error = error

    async def materialize(self, wallet_address: str) -> Session:
        self.calls.append(wallet_address)
        if self.error is not None:
            raise self.error
        return Session(user_id="user-1", wallet_address=wallet_address)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        xumm_mode="mock",
        backend_mode="mock",
        poll_interval_seconds=5,
        poll_initial_delay_seconds=1,
        poll_max_attempts=60,
        session_secret="test-secret",
    )


@pytest.fixture
def store() -> ResumptionStore:
    return ResumptionStore(MemoryStorage())
