# orchestrator.py
"""Course unlock workflow driven by payment webhooks.

Per event the workflow moves through::

    received -> signature-verified -> deduplicated -> entitlement-resolved -> granted | rejected

Anything past signature verification is acknowledged to the provider, because
Stripe retries every non-2xx answer. Business failures (unknown user or
course, failed payment) are logged for manual follow-up instead.

The purchase confirmation email is not part of the acknowledgment: callers
pass ``defer`` (``BackgroundTasks.add_task`` in the route) to send it after
the response.
"""
import enum
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from entitlements import EntitlementStore
from errors import Result
from idempotency import IdempotencyGuard
from mailer import Mailer, MailError
from models import Course, PurchaseStatus, User
from payments import PaymentEvent, PaymentOutcome, StripeGateway

logger = logging.getLogger(__name__)

Defer = Callable[..., None]


class UnlockOutcome(str, enum.Enum):
    GRANTED = "granted"
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"
    PAYMENT_FAILED = "payment_failed"
    PENDING = "pending"
    IGNORED = "ignored"
    ERROR = "error"


class UnlockOrchestrator:
    def __init__(
        self,
        gateway: StripeGateway,
        guard: IdempotencyGuard,
        session_factory: sessionmaker,
        mailer: Mailer | None = None,
    ):
        self.gateway = gateway
        self.guard = guard
        self.session_factory = session_factory
        self.mailer = mailer

    def handle_webhook(
        self, payload: bytes, signature: str | None, defer: Defer | None = None
    ) -> Result[UnlockOutcome]:
        verified = self.gateway.verify_webhook(payload, signature)
        if not verified.ok:
            logger.warning("webhook rejected: %s", verified.message)
            return Result.failure(verified.error, verified.message)
        return Result.success(self.process(verified.value, defer))

    def process(self, event: PaymentEvent, defer: Defer | None = None) -> UnlockOutcome:
        if event.outcome is None:
            logger.info("unhandled event %s (%s)", event.type, event.id)
            return UnlockOutcome.IGNORED
        if event.outcome == PaymentOutcome.PENDING:
            logger.info("event %s: payment for %s still pending", event.id, event.object_id)
            return UnlockOutcome.PENDING

        if not self.guard.claim(event.id):
            logger.info("event %s already processed", event.id)
            return UnlockOutcome.ALREADY_PROCESSED

        if event.user_id is None or event.course_id is None:
            logger.error("event %s (%s) carries no usable userId/courseId metadata", event.id, event.type)
            return UnlockOutcome.REJECTED

        try:
            if event.outcome == PaymentOutcome.FAILED:
                return self._record_failure(event)
            return self._grant(event, defer)
        except SQLAlchemyError:
            logger.exception("event %s: data store failure, releasing claim for retry", event.id)
            self.guard.release(event.id)
            return UnlockOutcome.ERROR
        except Exception:
            # the claim never outlives a failed attempt
            logger.exception("event %s: unexpected failure, releasing claim for retry", event.id)
            self.guard.release(event.id)
            return UnlockOutcome.ERROR

    def _grant(self, event: PaymentEvent, defer: Defer | None = None) -> UnlockOutcome:
        with self.session_factory() as db:
            store = EntitlementStore(db)
            result = store.grant(event.user_id, event.course_id)
            if not result.ok:
                logger.error(
                    "event %s: cannot grant course=%s to user=%s: %s (manual follow-up required)",
                    event.id, event.course_id, event.user_id, result.message,
                )
                return UnlockOutcome.REJECTED
            store.record_purchase(event.user_id, event.course_id, PurchaseStatus.APPROVED, event.object_id)
            user = db.get(User, event.user_id)
            course = db.get(Course, event.course_id)
            logger.info("event %s: course=%s unlocked for user=%s", event.id, event.course_id, event.user_id)

        if self.mailer is not None:
            if defer is None:
                self.notify(user, course)
            else:
                defer(self.notify, user, course)
        return UnlockOutcome.GRANTED

    def _record_failure(self, event: PaymentEvent) -> UnlockOutcome:
        logger.warning(
            "payment failed for course=%s user=%s: %s",
            event.course_id, event.user_id, event.failure_reason or "Erro desconhecido",
        )
        with self.session_factory() as db:
            if db.get(User, event.user_id) and db.get(Course, event.course_id):
                EntitlementStore(db).record_purchase(
                    event.user_id, event.course_id, PurchaseStatus.FAILED, event.object_id
                )
        return UnlockOutcome.PAYMENT_FAILED

    def notify(self, user: User, course: Course) -> None:
        try:
            self.mailer.send_purchase_confirmation(user, course)
        except MailError as e:
            logger.warning("purchase confirmation for user=%s not sent: %s", user.id, e)
