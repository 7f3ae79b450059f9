"""Shared test fixtures for the settlement-api test suite.

Store and service tests run against a throwaway SQLite database through
aiosqlite, so the guarded updates and partial unique index are exercised for
real without a live PostgreSQL instance.  The payment processor is replaced
by ``FakeProcessor``; webhook payloads are built with the ``make_*_event``
helpers and signed with ``sign``.
"""

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.core.database import Base
from app.core.errors import ProcessorError
from app.models.job import Job, JobStatus
from app.models.profile import BlockedUser, UserProfile
from app.models.settlement import SettlementRecord, SettlementStatus
from app.services.processor_client import CreatedCharge

WEBHOOK_SECRET = "whsec_test_secret"

POSTER_ID = "poster_1"
WORKER_ID = "worker_1"
WORKER_ACCOUNT = "acct_worker_1"
JOB_ID = "job_1"


# ── Factory helpers ───────────────────────────────────────────────────────────


def make_job(
    job_id: str = JOB_ID,
    status: JobStatus = JobStatus.IN_PROGRESS,
    posted_by: str = POSTER_ID,
    assigned_to: str | None = WORKER_ID,
    price_minor: int = 2500,
    currency: str | None = "USD",
    title: str = "Help moving a couch",
) -> Job:
    """Create a Job instance for testing."""
    return Job(
        id=job_id,
        title=title,
        status=status.value,
        posted_by=posted_by,
        assigned_to=assigned_to,
        price_minor=price_minor,
        currency=currency,
    )


def make_profile(
    user_id: str = WORKER_ID,
    payouts_enabled: bool = True,
    external_account_ref: str | None = WORKER_ACCOUNT,
    is_banned: bool = False,
) -> UserProfile:
    """Create a UserProfile; defaults to a worker ready for payouts."""
    return UserProfile(
        id=user_id,
        username=user_id,
        payouts_enabled=payouts_enabled,
        external_account_ref=external_account_ref,
        is_banned=is_banned,
    )


def make_poster(user_id: str = POSTER_ID, is_banned: bool = False) -> UserProfile:
    return make_profile(
        user_id, payouts_enabled=False, external_account_ref=None, is_banned=is_banned
    )


def make_block(blocker_id: str, blocked_id: str) -> BlockedUser:
    return BlockedUser(blocker_id=blocker_id, blocked_id=blocked_id)


def make_record(
    ref: str | None = "pi_test_1",
    job_id: str = JOB_ID,
    payer_id: str = POSTER_ID,
    payee_id: str = WORKER_ID,
    total_amount_minor: int = 2500,
    platform_fee_minor: int = 250,
    processor_fee_minor: int | None = 103,
    processor_fee_estimated: bool = True,
    status: SettlementStatus = SettlementStatus.PROCESSING,
    currency: str = "USD",
    created_at: datetime | None = None,
    record_id: uuid.UUID | None = None,
) -> SettlementRecord:
    """Create a SettlementRecord; defaults to the provisional row for a $25 job."""
    return SettlementRecord(
        id=record_id or uuid.uuid4(),
        job_id=job_id,
        payer_id=payer_id,
        payee_id=payee_id,
        total_amount_minor=total_amount_minor,
        platform_fee_minor=platform_fee_minor,
        platform_fee_percent=10.0,
        processor_fee_minor=processor_fee_minor,
        processor_fee_estimated=processor_fee_estimated,
        net_amount_minor=total_amount_minor - platform_fee_minor - (processor_fee_minor or 0),
        currency=currency,
        external_charge_ref=ref,
        status=status,
        created_at=created_at or datetime.now(timezone.utc),
        updated_at=created_at or datetime.now(timezone.utc),
    )


def _metadata(job_id: str | None, payer_id: str | None, payee_id: str | None) -> dict[str, str]:
    pairs = {"job_id": job_id, "payer_id": payer_id, "payee_id": payee_id}
    return {k: v for k, v in pairs.items() if v is not None}


def make_intent_event(
    intent_id: str = "pi_test_1",
    event_type: str = "payment_intent.succeeded",
    amount: int | None = 2500,
    application_fee: int | None = 250,
    balance_transaction: str | dict[str, Any] | None = "txn_test_1",
    job_id: str | None = JOB_ID,
    payer_id: str | None = POSTER_ID,
    payee_id: str | None = WORKER_ID,
    currency: str = "usd",
    event_id: str | None = None,
) -> dict[str, Any]:
    """A payment_intent.* event whose latest charge is expanded."""
    charge = {
        "id": intent_id.replace("pi_", "ch_", 1),
        "amount": amount,
        "payment_intent": intent_id,
        "balance_transaction": balance_transaction,
    }
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "amount": amount,
                "currency": currency,
                "application_fee_amount": application_fee,
                "latest_charge": charge,
                "metadata": _metadata(job_id, payer_id, payee_id),
            }
        },
    }


def make_charge_event(
    charge_id: str = "ch_test_1",
    intent_id: str | None = "pi_test_1",
    amount: int = 2500,
    application_fee: int | None = 250,
    balance_transaction: str | dict[str, Any] | None = "txn_test_1",
    job_id: str | None = JOB_ID,
    payer_id: str | None = POSTER_ID,
    payee_id: str | None = WORKER_ID,
    event_id: str | None = None,
) -> dict[str, Any]:
    """A charge.succeeded event."""
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": "charge.succeeded",
        "data": {
            "object": {
                "id": charge_id,
                "object": "charge",
                "amount": amount,
                "currency": "usd",
                "payment_intent": intent_id,
                "application_fee_amount": application_fee,
                "balance_transaction": balance_transaction,
                "metadata": _metadata(job_id, payer_id, payee_id),
            }
        },
    }


def make_account_event(
    account_id: str = WORKER_ACCOUNT, payouts_enabled: bool = True
) -> dict[str, Any]:
    return {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": "account.updated",
        "data": {"object": {"id": account_id, "object": "account", "payouts_enabled": payouts_enabled}},
    }


def signature_header(raw: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """A ``Stripe-Signature`` value the way the processor builds one."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + raw, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def sign(payload: dict[str, Any] | bytes, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    """Serialize ``payload`` and return ``(raw_body, signature_header)``."""
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return raw, signature_header(raw, secret)


class FakeProcessor:
    """In-memory stand-in for ``ProcessorClient``."""

    def __init__(
        self,
        fee: int | None = 103,
        lookup_error: ProcessorError | None = None,
        charge_error: Exception | None = None,
    ):
        self.fee = fee
        self.lookup_error = lookup_error
        self.charge_error = charge_error
        self.charges: list[dict[str, Any]] = []
        self.fee_lookups: list[str] = []

    async def create_destination_charge(self, **kwargs: Any) -> CreatedCharge:
        if self.charge_error is not None:
            raise self.charge_error
        self.charges.append(kwargs)
        ref = f"pi_test_{len(self.charges)}"
        return CreatedCharge(id=ref, client_secret=f"{ref}_secret_x", status="requires_payment_method")

    async def retrieve_balance_transaction_fee(self, balance_transaction_id: str) -> int | None:
        self.fee_lookups.append(balance_transaction_id)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.fee

    async def retrieve_charge_fee(self, charge_id: str) -> int | None:
        self.fee_lookups.append(charge_id)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.fee


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Session factory bound to a fresh SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")

    # Let SQLAlchemy issue BEGIN itself so SAVEPOINTs nest correctly.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest_asyncio.fixture
async def payable_job(session):
    """An in-progress $25 job with a payout-ready worker and a poster."""
    job = make_job()
    session.add_all([job, make_profile(), make_poster()])
    await session.commit()
    return job


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()
