"""
Payment orchestration.

Every operation follows the same shape:
1. Validate input at the boundary
2. Hold the reference lock for read-modify-write operations
3. Call Paystack outside any database transaction
4. Apply the outcome through the reconciliation engine in one session
5. Hand audit events to the background runner after commit
"""
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from tutorpay.config import Settings
from tutorpay.core.background import BackgroundRunner
from tutorpay.core.exceptions import (
    GatewayRejected,
    SignatureInvalid,
    ValidationError,
)
from tutorpay.core.locking import ReferenceLocker
from tutorpay.core.normalization import (
    describe_phone,
    mask_phone,
    normalize_phone,
    require_fields,
    to_minor_units,
    validate_amount,
)
from tutorpay.core.reconciliation import AuditEvent, ReconciliationEngine
from tutorpay.core.references import ReferencePrefix, generate_reference
from tutorpay.core.states import PaymentMethod, TransactionStatus
from tutorpay.database import (
    BookingStore,
    Database,
    TransactionEventStore,
    TransactionStore,
)
from tutorpay.database.models import utcnow
from tutorpay.integrations.paystack_client import ChargeResult, ChargeStatus, PaystackClient
from tutorpay.integrations.webhook_handler import parse_event
from tutorpay.integrations.webhook_verifier import WebhookSignatureVerifier
from tutorpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MPESA_PROVIDER = "mpesa"
MAX_HISTORY_LIMIT = 100


class PaymentService:
    """
    Entry point for every payment operation.

    Collaborators are constructed by the process entry point and passed
    in; the service holds no global state of its own.
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        gateway: PaystackClient,
        locker: ReferenceLocker,
        runner: BackgroundRunner,
        verifier: Optional[WebhookSignatureVerifier] = None,
    ):
        """
        Initialize payment service.

        Args:
            settings: Application settings
            database: Database handle
            gateway: Paystack client
            locker: Per-reference lock provider
            runner: Background runner for audit writes
            verifier: Webhook signature verifier (required for ``handle_webhook``)
        """
        self.settings = settings
        self.database = database
        self.gateway = gateway
        self.locker = locker
        self.runner = runner
        self.verifier = verifier

    def _validated_amount(self, amount: Any) -> Decimal:
        return validate_amount(amount, self.settings.min_amount, self.settings.max_amount)

    def _record_audit(self, events: List[AuditEvent]) -> None:
        for event in events:
            self.runner.submit(
                "transaction_event",
                lambda event=event: self._write_audit(event),
            )

    async def _write_audit(self, event: AuditEvent) -> None:
        async with self.database.session() as session:
            await TransactionEventStore(session).append(
                event.reference, event.event_type, event.data
            )

    async def initialize_payment(
        self,
        email: str,
        amount: Any,
        booking_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a hosted checkout (card or mobile money).

        The pending ledger entry is created only after Paystack accepts
        the initialization.

        Returns:
            Dict[str, Any]: Reference, access code and authorization URL

        Raises:
            ValidationError: Missing fields or amount out of bounds
            GatewayRejected: Paystack declined the initialization
            GatewayUnavailable: Paystack could not be reached
        """
        require_fields(
            {"email": email, "amount": amount, "booking_id": booking_id},
            ("email", "amount", "booking_id"),
        )
        value = self._validated_amount(amount)
        reference = generate_reference(ReferencePrefix.BOOKING)
        metadata = {**(metadata or {}), "booking_id": booking_id}

        logger.info(
            "payment_initialization_started",
            reference=reference,
            booking_id=booking_id,
            amount=str(value),
            payment_type=metadata.get("payment_type"),
        )

        try:
            result = await self.gateway.initialize_transaction(
                email=email,
                amount_minor=to_minor_units(value),
                reference=reference,
                channels=self.settings.get_channels_list(),
                metadata=metadata,
                currency=self.settings.paystack_currency,
                callback_url=callback_url,
            )
        except Exception:
            metrics.record_payment_request("checkout", "error", float(value))
            raise

        async with self.database.session() as session:
            await TransactionStore(session).create(
                reference=reference,
                booking_id=booking_id,
                email=email,
                amount=value,
                currency=self.settings.paystack_currency,
                payment_method=PaymentMethod.UNKNOWN.value,
                metadata=metadata,
                checkout_url=result.authorization_url,
            )

        metrics.record_payment_request("checkout", "initialized", float(value))
        self._record_audit(
            [AuditEvent(reference, "initialized", {"amount": str(value), "booking_id": booking_id})]
        )
        logger.info("payment_initialized", reference=reference, booking_id=booking_id)

        return {
            "reference": reference,
            "access_code": result.access_code,
            "authorization_url": result.authorization_url,
            "amount": value,
            "currency": self.settings.paystack_currency,
        }

    async def charge_mpesa(
        self,
        phone: str,
        amount: Any,
        email: str,
        booking_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Initialize a mobile money checkout, then push an STK prompt.

        The ledger entry is keyed by the charge reference and remembers
        the initialization reference.
        """
        require_fields(
            {"phone": phone, "amount": amount, "email": email, "booking_id": booking_id},
            ("phone", "amount", "email", "booking_id"),
        )
        canonical = normalize_phone(phone)
        value = self._validated_amount(amount)
        metadata = {**(metadata or {}), "booking_id": booking_id, "phone": canonical}

        init_reference = generate_reference(ReferencePrefix.INIT)
        init = await self.gateway.initialize_transaction(
            email=email,
            amount_minor=to_minor_units(value),
            reference=init_reference,
            channels=["mobile_money"],
            metadata=metadata,
            currency=self.settings.paystack_currency,
        )

        return await self._charge(
            reference=generate_reference(ReferencePrefix.CHARGE),
            phone=canonical,
            amount=value,
            email=email,
            booking_id=booking_id,
            metadata={**metadata, "init_reference": init_reference},
            init_reference=init_reference,
            checkout_url=init.authorization_url,
        )

    async def charge_mpesa_direct(
        self,
        phone: str,
        amount: Any,
        email: str,
        booking_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Push an STK prompt without a prior checkout initialization."""
        require_fields(
            {"phone": phone, "amount": amount, "email": email, "booking_id": booking_id},
            ("phone", "amount", "email", "booking_id"),
        )
        canonical = normalize_phone(phone)
        value = self._validated_amount(amount)
        return await self._charge(
            reference=generate_reference(ReferencePrefix.MPESA),
            phone=canonical,
            amount=value,
            email=email,
            booking_id=booking_id,
            metadata={**(metadata or {}), "booking_id": booking_id, "phone": canonical},
        )

    async def _charge(
        self,
        reference: str,
        phone: str,
        amount: Decimal,
        email: str,
        booking_id: str,
        metadata: Dict[str, Any],
        **extra: Any,
    ) -> Dict[str, Any]:
        logger.info(
            "mpesa_charge_started",
            reference=reference,
            booking_id=booking_id,
            phone=mask_phone(phone),
            amount=str(amount),
        )
        try:
            charge = await self.gateway.charge_mobile_money(
                email=email,
                amount_minor=to_minor_units(amount),
                reference=reference,
                phone=phone,
                provider=MPESA_PROVIDER,
                metadata=metadata,
                currency=self.settings.paystack_currency,
            )
        except Exception:
            metrics.record_payment_request("mpesa", "error", float(amount))
            raise

        async with self.locker.hold(reference):
            async with self.database.session() as session:
                engine = ReconciliationEngine(session)
                transaction = await engine.transactions.create(
                    reference=reference,
                    booking_id=booking_id,
                    email=email,
                    amount=amount,
                    currency=self.settings.paystack_currency,
                    payment_method=PaymentMethod.MPESA.value,
                    metadata=metadata,
                    phone=phone,
                    **extra,
                )
                await self._apply_charge(engine, transaction, charge)
            self._record_audit(
                [AuditEvent(reference, "charge_requested", {"charge_status": charge.raw_status})]
                + engine.audit
            )

        metrics.record_payment_request("mpesa", charge.status.value, float(amount))
        self._raise_if_declined(reference, charge)

        return {
            "reference": reference,
            "status": charge.status.value,
            "display_text": charge.display_text,
            "init_reference": extra.get("init_reference"),
            "phone": mask_phone(phone),
            "amount": amount,
            "currency": self.settings.paystack_currency,
        }

    @staticmethod
    async def _apply_charge(
        engine: ReconciliationEngine, transaction: Any, charge: ChargeResult
    ) -> None:
        if charge.status == ChargeStatus.SUCCESS:
            await engine.apply_success(transaction, source="charge", gateway_response=charge.message)
        elif charge.status == ChargeStatus.FAILED:
            await engine.apply_failure(transaction, source="charge", reason=charge.message)

    @staticmethod
    def _raise_if_declined(reference: str, charge: ChargeResult) -> None:
        if charge.status == ChargeStatus.FAILED:
            logger.warning(
                "mpesa_charge_declined",
                reference=reference,
                gateway_status=charge.raw_status,
                message=charge.message,
            )
            raise GatewayRejected(
                charge.message or "M-Pesa charge failed",
                detail={"reference": reference, "status": charge.raw_status},
            )

    async def verify_payment(self, reference: str) -> Dict[str, Any]:
        """
        Fetch gateway truth for ``reference`` and reconcile.

        Raises:
            RecordNotFound: Unknown locally or at the gateway
        """
        require_fields({"reference": reference}, ("reference",))

        async with self.locker.hold(reference):
            async with self.database.session() as session:
                await TransactionStore(session).require(reference)

            result = await self.gateway.verify_transaction(reference)

            async with self.database.session() as session:
                engine = ReconciliationEngine(session)
                transaction = await engine.transactions.require(reference)
                outcome = await engine.apply_verification(transaction, result)
                data = transaction.to_dict()
            self._record_audit(engine.audit)

        logger.info(
            "payment_verified",
            reference=reference,
            gateway_status=result.status,
            status=data["status"],
            outcome=outcome,
        )
        data["phone"] = mask_phone(data["phone"])
        data["gateway_status"] = result.status
        data["outcome"] = outcome
        return data

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify, parse and apply one webhook delivery.

        The signature is checked before anything is read from or written
        to the stores.

        Raises:
            SignatureInvalid: Missing or wrong signature
            ValidationError: Malformed body or missing reference
            RecordNotFound: Unknown reference
        """
        if self.verifier is None or not self.verifier.verify(raw_body, signature):
            raise SignatureInvalid()

        start = time.monotonic()
        event = parse_event(raw_body)

        logger.info(
            "webhook_event_received",
            event_type=event.event_type,
            reference=event.reference,
            delivery_id=event.delivery_id,
        )

        async with self.locker.hold(event.reference):
            async with self.database.session() as session:
                engine = ReconciliationEngine(session)
                result = await engine.apply_webhook(event)
            self._record_audit(engine.audit)

        metrics.record_webhook_event(event.event_type, result["status"], time.monotonic() - start)
        logger.info(
            "webhook_event_processed",
            event_type=event.event_type,
            reference=event.reference,
            outcome=result["status"],
        )
        return result

    async def retry_payment(
        self,
        reference: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Retry a failed payment under a new ``retry_`` reference.

        Uses an M-Pesa charge when a phone number is known (given or on
        the original), otherwise opens a new hosted checkout. Nothing is
        recorded unless Paystack accepts the new attempt.

        Raises:
            InvalidTransition: Unless the original is ``failed``
        """
        require_fields({"reference": reference}, ("reference",))

        async with self.locker.hold(reference):
            async with self.database.session() as session:
                original = await TransactionStore(session).require(reference)
                ReconciliationEngine.ensure_retryable(original)
                amount = original.amount
                booking_id = original.booking_id
                retry_phone = normalize_phone(phone) if phone else original.phone
                retry_email = email or original.email
                metadata = {
                    **(original.payment_metadata or {}),
                    "original_reference": reference,
                    "is_retry": True,
                }

            retry_reference = generate_reference(ReferencePrefix.RETRY)
            charge: Optional[ChargeResult] = None
            extra: Dict[str, Any] = {}

            if retry_phone:
                charge = await self.gateway.charge_mobile_money(
                    email=retry_email,
                    amount_minor=to_minor_units(amount),
                    reference=retry_reference,
                    phone=retry_phone,
                    provider=MPESA_PROVIDER,
                    metadata=metadata,
                    currency=self.settings.paystack_currency,
                )
                extra["payment_method"] = PaymentMethod.MPESA.value
            else:
                init = await self.gateway.initialize_transaction(
                    email=retry_email,
                    amount_minor=to_minor_units(amount),
                    reference=retry_reference,
                    channels=self.settings.get_channels_list(),
                    metadata=metadata,
                    currency=self.settings.paystack_currency,
                )
                extra["checkout_url"] = init.authorization_url

            async with self.locker.hold(retry_reference):
                async with self.database.session() as session:
                    engine = ReconciliationEngine(session)
                    original = await engine.transactions.require(reference)
                    retry = await engine.begin_retry(
                        original, retry_reference, retry_phone, retry_email, **extra
                    )
                    if charge is not None:
                        await self._apply_charge(engine, retry, charge)
                    retry_count = original.retry_count
                    status = retry.status
                self._record_audit(engine.audit)

        metrics.record_payment_request("retry", status, float(amount))
        if charge is not None:
            self._raise_if_declined(retry_reference, charge)

        logger.info(
            "payment_retry_initiated",
            original_reference=reference,
            retry_reference=retry_reference,
            booking_id=booking_id,
        )
        return {
            "original_reference": reference,
            "new_reference": retry_reference,
            "retry_count": retry_count,
            "status": status,
            "display_text": charge.display_text if charge else None,
            "authorization_url": extra.get("checkout_url"),
        }

    async def cancel_payment(self, reference: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Cancel a payment that has not completed.

        Raises:
            InvalidTransition: Payment already succeeded or was cancelled
        """
        require_fields({"reference": reference}, ("reference",))

        async with self.locker.hold(reference):
            async with self.database.session() as session:
                engine = ReconciliationEngine(session)
                transaction = await engine.transactions.require(reference)
                await engine.cancel(transaction, reason)
                result = {
                    "reference": reference,
                    "status": transaction.status,
                    "cancelled_at": transaction.cancelled_at,
                    "cancel_reason": transaction.cancel_reason,
                }
            self._record_audit(engine.audit)

        logger.info("payment_cancelled", reference=reference)
        return result

    async def release_escrow(
        self, booking_id: str, teacher_phone: str, amount: Any
    ) -> Dict[str, Any]:
        """
        Release held escrow once both parties confirmed completion.

        Raises:
            PreconditionFailed: Completion missing, already released or never funded
        """
        require_fields(
            {"booking_id": booking_id, "teacher_phone": teacher_phone, "amount": amount},
            ("booking_id", "teacher_phone", "amount"),
        )
        canonical = normalize_phone(teacher_phone)
        value = self._validated_amount(amount)

        async with self.locker.hold(f"booking:{booking_id}"):
            async with self.database.session() as session:
                engine = ReconciliationEngine(session)
                booking = await engine.bookings.require(booking_id)
                await engine.release_escrow(booking, canonical, value)
                released_at = booking.escrow_released_at
            self._record_audit(engine.audit)

        return {
            "booking_id": booking_id,
            "amount": value,
            "teacher_phone": mask_phone(canonical),
            "released_at": released_at,
        }

    async def get_payment_status(self, reference: str) -> Dict[str, Any]:
        """Current ledger entry for ``reference`` with the phone masked."""
        require_fields({"reference": reference}, ("reference",))
        async with self.database.session() as session:
            transaction = await TransactionStore(session).require(reference)
            data = transaction.to_dict()
        data["phone"] = mask_phone(data["phone"])
        return data

    async def get_transaction_history(
        self,
        email: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Payments for one payer, newest first.

        Raises:
            ValidationError: Unknown status filter or bad paging values
        """
        require_fields({"email": email}, ("email",))
        if status is not None and status not in {s.value for s in TransactionStatus}:
            raise ValidationError(f"Unknown status filter: {status}")
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {MAX_HISTORY_LIMIT}")
        if offset < 0:
            raise ValidationError("Offset cannot be negative")

        async with self.database.session() as session:
            rows = await TransactionStore(session).list_for_email(email, status, limit, offset)
            transactions = [row.to_dict() for row in rows]

        for item in transactions:
            item["phone"] = mask_phone(item["phone"])
        return {
            "transactions": transactions,
            "count": len(transactions),
            "limit": limit,
            "offset": offset,
        }

    async def get_negotiation_status(self, booking_id: str) -> Dict[str, Any]:
        """Whether the booking fee unlocked negotiation for ``booking_id``."""
        require_fields({"booking_id": booking_id}, ("booking_id",))
        async with self.database.session() as session:
            booking = await BookingStore(session).require(booking_id)
            return {
                "booking_id": booking.id,
                "status": booking.status,
                "negotiation_unlocked": booking.negotiation_unlocked,
                "booking_fee_paid": booking.booking_fee_paid,
                "negotiation": booking.negotiation,
                "unlocked_at": booking.negotiation_unlocked_at,
                "last_updated": booking.last_updated,
            }

    def validate_phone(self, phone: str) -> Dict[str, str]:
        """Normalize ``phone`` and describe its provider."""
        require_fields({"phone": phone}, ("phone",))
        return describe_phone(phone)

    async def stale_pending_references(self, min_age_seconds: int, limit: int) -> List[str]:
        """Pending references created more than ``min_age_seconds`` ago."""
        older_than = utcnow() - timedelta(seconds=min_age_seconds)
        async with self.database.session() as session:
            return await TransactionStore(session).list_stale_pending(older_than, limit)
