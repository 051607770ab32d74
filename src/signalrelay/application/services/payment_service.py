# src/signalrelay/application/services/payment_service.py
"""
PaymentService - the UPI payment ledger.

initiated --submit_proof--> pending --approve--> approved (+ subscription)
                                    \--reject---> rejected
initiated|pending --TTL--> expired

Every status change is a conditional UPDATE guarded by its legal source
states, so two admins approving the same payment cannot both succeed and a
late sweep cannot expire a payment that was just approved.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from signalrelay.config import settings
from signalrelay.domain.entities import PaymentMethod, PaymentStatus, PlanStatus
from signalrelay.domain.errors import (
    ExpiredError, InvalidStateError, NotFoundError, ValidationError,
)
from signalrelay.domain.value_objects import utcnow
from signalrelay.infrastructure.db.models import Payment
from signalrelay.infrastructure.db.repository import PaymentRepository, PlanRepository, UserRepository
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope
from signalrelay.infrastructure.metrics import PAYMENT_TRANSITIONS
from signalrelay.infrastructure.payments.proof_storage import ALLOWED_PROOF_TYPES, ProofStorage
from signalrelay.infrastructure.payments.qr import QrCodeStore
from signalrelay.infrastructure.payments.upi import (
    UpiPayee, default_note, generate_payment_string, generate_transaction_id,
)
from .subscription_service import SubscriptionService

log = logging.getLogger(__name__)

MAX_REJECTION_REASON = 200


def default_payee() -> UpiPayee:
    return UpiPayee(
        vpa=settings.UPI_VPA,
        merchant_name=settings.UPI_MERCHANT_NAME,
        merchant_code=settings.UPI_MERCHANT_CODE,
        currency=settings.PAYMENT_CURRENCY,
    )


class PaymentService:
    def __init__(
        self,
        subscriptions: SubscriptionService,
        qr_store: Optional[QrCodeStore] = None,
        proof_storage: Optional[ProofStorage] = None,
        session_scope: SessionScope = default_session_scope,
        payee: Optional[UpiPayee] = None,
        ttl_hours: int = settings.PAYMENT_TTL_HOURS,
        proof_max_bytes: int = settings.PROOF_MAX_BYTES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.subscriptions = subscriptions
        self.qr_store = qr_store or QrCodeStore(settings.QR_CODE_DIR)
        self.proof_storage = proof_storage or ProofStorage(settings.PROOF_UPLOAD_DIR)
        self.session_scope = session_scope
        self.payee = payee or default_payee()
        self.ttl = timedelta(hours=ttl_hours)
        self.proof_max_bytes = proof_max_bytes
        self.clock = clock

    # --- Creation ---

    def _unique_transaction_id(self, repo: PaymentRepository) -> str:
        for _ in range(5):
            txn = generate_transaction_id()
            if not repo.transaction_id_exists(txn):
                return txn
        raise RuntimeError("Could not allocate a unique transaction id.")

    def create_payment_request(self, user_id: int, plan_id: int, metadata: Optional[Dict[str, Any]] = None) -> Payment:
        metadata = metadata or {}
        with self.session_scope() as session:
            if UserRepository(session).find_by_id(user_id) is None:
                raise NotFoundError(f"User #{user_id} not found.")
            plan = PlanRepository(session).get(plan_id)
            if plan is None or plan.status != PlanStatus.ACTIVE:
                raise NotFoundError(f"Subscription plan #{plan_id} not found.")
            amount = plan.amount
            transaction_id = self._unique_transaction_id(PaymentRepository(session))

        payment_string = generate_payment_string(
            self.payee, amount, transaction_id, metadata.get("note") or default_note(transaction_id)
        )
        qr = self.qr_store.render(payment_string, transaction_id)

        now = self.clock()
        try:
            with self.session_scope() as session:
                payment = PaymentRepository(session).add(
                    user_id=user_id,
                    plan_id=plan_id,
                    transaction_id=transaction_id,
                    amount=amount,
                    currency=self.payee.currency,
                    method=PaymentMethod.UPI,
                    upi_vpa=self.payee.vpa,
                    upi_merchant_name=self.payee.merchant_name,
                    upi_merchant_code=self.payee.merchant_code,
                    payment_string=payment_string,
                    qr_code_path=qr.path,
                    qr_code_url=qr.url,
                    ip_address=metadata.get("ip_address"),
                    user_agent=metadata.get("user_agent"),
                    expires_at=now + self.ttl,
                    status=PaymentStatus.INITIATED,
                )
                session.refresh(payment)
        except Exception:
            self.qr_store.remove(qr.path)
            raise

        PAYMENT_TRANSITIONS.labels(status=PaymentStatus.INITIATED.value).inc()
        log.info(f"Payment {transaction_id} initiated for user {user_id}, plan {plan_id}, amount {amount}")
        return payment

    # --- Proof of payment ---

    def check_proof_size(self, size: int) -> None:
        """Also called by the upload route while the body is still streaming in."""
        if size > self.proof_max_bytes:
            raise ValidationError(f"Payment proof exceeds the {self.proof_max_bytes} byte limit.")

    def _validate_proof(self, content: bytes, mimetype: str) -> None:
        if (mimetype or "").lower() not in ALLOWED_PROOF_TYPES:
            raise ValidationError("Invalid file type. Only JPEG, PNG, WebP and PDF files are allowed.")
        if not content:
            raise ValidationError("Payment proof file is empty.")
        self.check_proof_size(len(content))

    def submit_proof(
        self, payment_id: int, user_id: int, content: bytes, mimetype: str, original_name: str = "",
    ) -> Payment:
        now = self.clock()
        with self.session_scope() as session:
            repo = PaymentRepository(session)
            payment = repo.get(payment_id)
            if payment is None or payment.user_id != user_id:
                raise NotFoundError(f"Payment #{payment_id} not found.")
            if payment.status.is_terminal:
                raise InvalidStateError(
                    f"Payment {payment.transaction_id} is already {payment.status.value}.",
                    current=payment.status.value,
                )
            transaction_id = payment.transaction_id
            expired = payment.is_expired(now)
            # the flip must commit, so ExpiredError is raised once the scope has closed
            if expired and repo.transition(payment_id, PaymentStatus.EXPIRED):
                PAYMENT_TRANSITIONS.labels(status=PaymentStatus.EXPIRED.value).inc()

        if expired:
            raise ExpiredError(f"Payment {transaction_id} has expired.")

        self._validate_proof(content, mimetype)
        stored = self.proof_storage.save(transaction_id, original_name, content, mimetype.lower())

        with self.session_scope() as session:
            repo = PaymentRepository(session)
            moved = repo.transition(
                payment_id,
                PaymentStatus.PENDING,
                [PaymentStatus.INITIATED, PaymentStatus.PENDING],
                proof_original_name=stored.original_name,
                proof_filename=stored.filename,
                proof_path=stored.path,
                proof_url=stored.url,
                proof_size=stored.size,
                proof_mimetype=stored.mimetype,
                proof_uploaded_at=stored.uploaded_at,
            )
            if moved:
                payment = repo.get(payment_id, fresh=True)
            else:
                current = repo.get(payment_id, fresh=True)
        if not moved:
            self.proof_storage.remove(stored.path)
            raise InvalidStateError(
                f"Payment {transaction_id} changed state while the proof was uploading.",
                current=current.status.value if current else None,
            )

        PAYMENT_TRANSITIONS.labels(status=PaymentStatus.PENDING.value).inc()
        log.info(f"Proof uploaded for payment {transaction_id} ({stored.filename}, {stored.size} bytes)")
        return payment

    # --- Verification ---

    def approve(self, payment_id: int, verifier_id: int, notes: Optional[str] = None) -> Payment:
        """Moves pending -> approved and activates the subscription in the same transaction."""
        now = self.clock()
        with self.session_scope() as session:
            repo = PaymentRepository(session)
            payment = repo.get_for_update(payment_id)
            if payment is None:
                raise NotFoundError(f"Payment #{payment_id} not found.")
            self._ensure_verifiable(payment, now)

            if not repo.transition(
                payment_id, PaymentStatus.APPROVED, [PaymentStatus.PENDING],
                verified_by=verifier_id, verified_at=now, verification_notes=notes,
            ):
                current = repo.get(payment_id, fresh=True)
                raise InvalidStateError(
                    f"Payment {payment.transaction_id} was verified concurrently.",
                    current=current.status.value if current else None,
                )

            payment = repo.get(payment_id, fresh=True)
            subscription = self.subscriptions.activate(session, payment, now=now)
            repo.link_subscription(payment_id, subscription.id)
            session.refresh(payment)

        PAYMENT_TRANSITIONS.labels(status=PaymentStatus.APPROVED.value).inc()
        log.info(
            f"Payment {payment.transaction_id} approved by {verifier_id}; "
            f"subscription #{payment.subscription_id} active"
        )
        return payment

    def reject(self, payment_id: int, verifier_id: int, reason: str, notes: Optional[str] = None) -> Payment:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required.")
        if len(reason) > MAX_REJECTION_REASON:
            raise ValidationError(f"Rejection reason must be at most {MAX_REJECTION_REASON} characters.")

        now = self.clock()
        with self.session_scope() as session:
            repo = PaymentRepository(session)
            payment = repo.get_for_update(payment_id)
            if payment is None:
                raise NotFoundError(f"Payment #{payment_id} not found.")
            self._ensure_verifiable(payment, now)

            if not repo.transition(
                payment_id, PaymentStatus.REJECTED, [PaymentStatus.PENDING],
                verified_by=verifier_id, verified_at=now,
                rejection_reason=reason, verification_notes=notes,
            ):
                current = repo.get(payment_id, fresh=True)
                raise InvalidStateError(
                    f"Payment {payment.transaction_id} was verified concurrently.",
                    current=current.status.value if current else None,
                )
            payment = repo.get(payment_id, fresh=True)

        PAYMENT_TRANSITIONS.labels(status=PaymentStatus.REJECTED.value).inc()
        log.info(f"Payment {payment.transaction_id} rejected by {verifier_id}: {reason}")
        return payment

    @staticmethod
    def _ensure_verifiable(payment: Payment, now: datetime) -> None:
        if payment.status != PaymentStatus.PENDING:
            raise InvalidStateError(
                f"Payment {payment.transaction_id} cannot be verified in status {payment.status.value}.",
                current=payment.status.value,
            )
        if not payment.can_be_verified(now):
            raise ExpiredError(f"Payment {payment.transaction_id} has expired.")

    # --- Maintenance ---

    def expire_stale_payments(self, now: Optional[datetime] = None) -> int:
        """Sweeps initiated/pending payments past their TTL to expired and drops their QR images."""
        now = now or self.clock()
        expired = 0
        qr_paths: List[str] = []
        with self.session_scope() as session:
            repo = PaymentRepository(session)
            for payment in repo.list_stale(now):
                if not repo.transition(payment.id, PaymentStatus.EXPIRED):
                    continue
                expired += 1
                log.info(f"Payment {payment.transaction_id} expired (was {payment.status.value})")
                if payment.qr_code_path:
                    qr_paths.append(payment.qr_code_path)
        for path in qr_paths:
            self.qr_store.remove(path)
        if expired:
            PAYMENT_TRANSITIONS.labels(status=PaymentStatus.EXPIRED.value).inc(expired)
        return expired

    # --- Queries ---

    def get_payment(self, payment_id: int) -> Payment:
        with self.session_scope() as session:
            payment = PaymentRepository(session).get(payment_id)
            if payment is None:
                raise NotFoundError(f"Payment #{payment_id} not found.")
            return payment

    def get_by_transaction_id(self, transaction_id: str) -> Payment:
        with self.session_scope() as session:
            payment = PaymentRepository(session).find_by_transaction_id(transaction_id)
            if payment is None:
                raise NotFoundError(f"Payment {transaction_id} not found.")
            return payment

    def list_user_payments(
        self, user_id: int, status: Optional[PaymentStatus] = None, limit: int = 10,
    ) -> List[Payment]:
        with self.session_scope() as session:
            return PaymentRepository(session).list_by_user(user_id, status=status, limit=limit)

    def list_pending(self, limit: int = 50) -> List[Payment]:
        with self.session_scope() as session:
            return PaymentRepository(session).list_pending(limit)

    def stats(self) -> Dict[str, Dict[str, Any]]:
        with self.session_scope() as session:
            return PaymentRepository(session).stats()
