# payments.py
import enum
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe
from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import HTTPException
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from auth import get_current_user
from db import get_db
from entitlements import EntitlementStore
from errors import ErrorKind, Result
from models import Course, PurchaseStatus, Role, User
from schemas import MAX_ID, CheckoutIn, CheckoutOut

logger = logging.getLogger(__name__)

router = APIRouter()

APPROVED_TYPES = {"payment_intent.succeeded", "checkout.session.async_payment_succeeded"}
FAILED_TYPES = {"payment_intent.payment_failed", "checkout.session.async_payment_failed"}


def make_stripe_client(api_key: str | None, timeout: int = 10) -> stripe.StripeClient | None:
    if not api_key:
        logger.warning("STRIPE_SECRET_KEY not set, checkout is disabled")
        return None
    return stripe.StripeClient(api_key, http_client=stripe.RequestsClient(timeout=timeout), max_network_retries=1)


def to_minor_units(price: Decimal) -> int:
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_int(value) -> int | None:
    # metadata ids arrive as strings from Stripe, numbers from hand-built payloads
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if 0 < number <= MAX_ID else None


class PaymentOutcome(str, enum.Enum):
    APPROVED = "approved"
    FAILED = "failed"
    PENDING = "pending"


class PaymentEvent(BaseModel):
    id: str
    type: str
    object_id: str | None = None
    user_id: int | None = None
    course_id: int | None = None
    outcome: PaymentOutcome | None = None
    failure_reason: str | None = None

    @classmethod
    def from_stripe(cls, data: dict) -> "PaymentEvent":
        event_type = data["type"]
        obj = (data.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type in APPROVED_TYPES:
            outcome = PaymentOutcome.APPROVED
        elif event_type in FAILED_TYPES:
            outcome = PaymentOutcome.FAILED
        elif event_type == "checkout.session.completed":
            # boleto and other delayed methods complete the session before paying
            paid = obj.get("payment_status") in ("paid", "no_payment_required")
            outcome = PaymentOutcome.APPROVED if paid else PaymentOutcome.PENDING
        else:
            outcome = None

        error = obj.get("last_payment_error") or {}
        return cls(
            id=data["id"],
            type=event_type,
            object_id=obj.get("id"),
            user_id=_as_int(metadata.get("userId")),
            course_id=_as_int(metadata.get("courseId")),
            outcome=outcome,
            failure_reason=error.get("message") if isinstance(error, dict) else None,
        )


class StripeGateway:
    """Checkout sessions and webhook verification against Stripe."""

    def __init__(
        self,
        client: stripe.StripeClient | None,
        webhook_secret: str,
        client_url: str,
        currency: str = "brl",
        tolerance: int = 300,
    ):
        self.client = client
        self.webhook_secret = webhook_secret
        self.client_url = client_url.rstrip("/")
        self.currency = currency
        self.tolerance = tolerance

    def create_checkout(self, db: Session, course_id: int, user_id: int) -> Result[dict]:
        course = db.get(Course, course_id)
        if not course:
            return Result.failure(ErrorKind.NOT_FOUND, "Curso não encontrado.")
        if db.get(User, user_id) is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Usuário não encontrado.")

        store = EntitlementStore(db)
        if store.has(user_id, course_id):
            return Result.failure(ErrorKind.CONFLICT, "Você já comprou este curso.")
        if self.client is None:
            return Result.failure(ErrorKind.DEPENDENCY, "Pagamentos indisponíveis no momento.")

        metadata = {"courseId": str(course_id), "userId": str(user_id)}
        try:
            session = self.client.checkout.sessions.create(
                params={
                    "mode": "payment",
                    "line_items": [{
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {"name": course.title, "description": course.description},
                            "unit_amount": to_minor_units(course.price),
                        },
                        "quantity": 1,
                    }],
                    "metadata": metadata,
                    "payment_intent_data": {"metadata": metadata},
                    "success_url": f"{self.client_url}/success?courseId={course_id}&userId={user_id}",
                    "cancel_url": f"{self.client_url}/cancel?courseId={course_id}",
                }
            )
        except stripe.APIConnectionError as e:
            logger.warning("stripe unreachable creating checkout course=%s user=%s: %s", course_id, user_id, e)
            return Result.failure(ErrorKind.DEPENDENCY, "Provedor de pagamento indisponível, tente novamente.")
        except stripe.StripeError as e:
            logger.error("stripe error creating checkout course=%s user=%s: %s", course_id, user_id, e)
            return Result.failure(ErrorKind.DEPENDENCY, "Erro ao criar sessão de checkout")

        store.record_purchase(user_id, course_id, PurchaseStatus.PENDING, session.id)
        logger.info("checkout session %s created for course=%s user=%s", session.id, course_id, user_id)
        return Result.success({"redirectUrl": session.url, "sessionId": session.id})

    def verify_webhook(self, payload: bytes, signature: str | None) -> Result[PaymentEvent]:
        if not signature or not self.webhook_secret:
            return Result.failure(ErrorKind.INVALID_SIGNATURE, "Webhook Error: missing signature")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, self.tolerance)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            return Result.failure(ErrorKind.INVALID_SIGNATURE, f"Webhook Error: {e}")

        try:
            event = PaymentEvent.from_stripe(json.loads(text))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return Result.failure(ErrorKind.INVALID_INPUT, f"Webhook Error: malformed event ({e})")
        return Result.success(event)


# === CHECKOUT ===
@router.post("/checkout", response_model=CheckoutOut)
def checkout(
    request: Request,
    body: Any = Body(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        payload = CheckoutIn.model_validate(body)
    except ValidationError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "userId e courseId são obrigatórios.")
    if user.id != payload.user_id and user.role != Role.ADMIN:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Não é possível comprar para outro usuário.")
    gateway: StripeGateway = request.app.state.gateway
    return gateway.create_checkout(db, payload.course_id, payload.user_id).unwrap()


# === WEBHOOK ===
@router.post("/webhook")
async def webhook(request: Request, background_tasks: BackgroundTasks):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    result = await run_in_threadpool(
        request.app.state.orchestrator.handle_webhook, payload, signature, background_tasks.add_task
    )
    outcome = result.unwrap()
    return {"received": True, "status": outcome.value}
