"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from tutorpay.config import Settings
from tutorpay.core.background import BackgroundRunner
from tutorpay.core.locking import ReferenceLocker
from tutorpay.core.payment_service import PaymentService
from tutorpay.database import Booking, BookingActivity, Database, Transaction, TransactionEvent
from tutorpay.integrations.paystack_client import (
    ChargeResult,
    ChargeStatus,
    InitializeResult,
    PaystackClient,
    VerificationResult,
)
from tutorpay.integrations.webhook_verifier import WebhookSignatureVerifier

TEST_SECRET_KEY = "sk_test_tutorpay_fake_key"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        paystack_secret_key=TEST_SECRET_KEY,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tutorpay_test.db'}",
        redis_url=None,
        app_name="tutorpay-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        redis_lock_timeout=5,
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create test database with all tables."""
    db = Database(test_settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Paystack client double with pending-by-default answers."""
    gateway = AsyncMock(spec=PaystackClient)
    gateway.initialize_transaction.return_value = InitializeResult(
        reference="ignored",
        access_code="ac_test_123",
        authorization_url="https://checkout.paystack.com/ac_test_123",
    )
    gateway.charge_mobile_money.return_value = ChargeResult(
        reference="ignored",
        status=ChargeStatus.PENDING_USER_ACTION,
        raw_status="pay_offline",
        display_text="Please complete authorization on your mobile phone",
    )
    gateway.verify_transaction.return_value = VerificationResult(
        reference="ignored",
        status="ongoing",
        amount_minor=None,
        paid_at=None,
        channel=None,
        gateway_response=None,
    )
    return gateway


@pytest.fixture
def runner() -> BackgroundRunner:
    return BackgroundRunner(wait_min=0.01, wait_max=0.05)


@pytest.fixture
def service(
    test_settings: Settings,
    database: Database,
    mock_gateway: AsyncMock,
    runner: BackgroundRunner,
) -> PaymentService:
    """Payment service wired to the test database and the gateway double."""
    return PaymentService(
        settings=test_settings,
        database=database,
        gateway=mock_gateway,
        locker=ReferenceLocker(test_settings),
        runner=runner,
        verifier=WebhookSignatureVerifier(TEST_SECRET_KEY),
    )


@pytest.fixture
def sign() -> Callable[[bytes], str]:
    """Sign a payload the way Paystack does."""

    def _sign(body: bytes) -> str:
        return hmac.new(TEST_SECRET_KEY.encode(), body, hashlib.sha512).hexdigest()

    return _sign


@pytest.fixture
def webhook_body() -> Callable[..., bytes]:
    """Build a Paystack webhook body."""

    def _build(event: str, reference: str, **data: Any) -> bytes:
        payload = {"event": event, "data": {"reference": reference, **data}}
        return json.dumps(payload).encode()

    return _build


class Records:
    """Reads rows back through fresh sessions."""

    def __init__(self, database: Database):
        self.database = database

    async def transaction(self, reference: str) -> Optional[Transaction]:
        async with self.database.session() as session:
            return await session.get(Transaction, reference)

    async def booking(self, booking_id: str) -> Optional[Booking]:
        async with self.database.session() as session:
            return await session.get(Booking, booking_id)

    async def activity(self, booking_id: str) -> List[BookingActivity]:
        async with self.database.session() as session:
            result = await session.execute(
                select(BookingActivity)
                .where(BookingActivity.booking_id == booking_id)
                .order_by(BookingActivity.id)
            )
            return list(result.scalars().all())

    async def events(self, reference: str) -> List[TransactionEvent]:
        async with self.database.session() as session:
            result = await session.execute(
                select(TransactionEvent)
                .where(TransactionEvent.reference == reference)
                .order_by(TransactionEvent.id)
            )
            return list(result.scalars().all())

    async def transaction_count(self) -> int:
        async with self.database.session() as session:
            result = await session.execute(select(Transaction.reference))
            return len(result.all())


@pytest.fixture
def records(database: Database) -> Records:
    return Records(database)


@pytest.fixture
def create_booking(database: Database) -> Callable[..., Awaitable[Booking]]:
    """Insert a booking the way the booking subsystem would."""

    async def _create(booking_id: str = "bk1", **fields: Any) -> Booking:
        values: Dict[str, Any] = {"status": "pending", **fields}
        async with database.session() as session:
            booking = Booking(id=booking_id, **values)
            session.add(booking)
        return booking

    return _create


@pytest.fixture
def initialize_booking_fee(
    service: PaymentService,
) -> Callable[..., Awaitable[Dict[str, Any]]]:
    """Initialize a booking fee payment for ``bk1``."""

    async def _initialize(
        booking_id: str = "bk1",
        amount: Any = 500,
        payment_type: str = "booking_fee",
    ) -> Dict[str, Any]:
        return await service.initialize_payment(
            email="a@b.com",
            amount=amount,
            booking_id=booking_id,
            metadata={"payment_type": payment_type},
        )

    return _initialize
