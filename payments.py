"""
Hosted checkout and payment recording.

The payments collection is an append-only ledger keyed by the gateway's
payment-intent id (``transactionalId``). Recording a completed checkout is a
single upsert with ``$setOnInsert`` against the unique index on that field, so
repeated or concurrent completion calls for the same transaction produce one
payment record and one booking transition.
"""
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol

import stripe
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import lifecycle
from config import Settings, get_settings
from database import BOOKINGS, PAYMENTS, serialize, to_object_id, utcnow
from errors import DependencyError, ValidationError

logger = logging.getLogger(__name__)

TRACKING_PREFIX = "PRCL"
METADATA_KEYS = ("bookingId", "serviceId", "serviceName", "serviceImage", "userEmail")


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str] = None
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def create_checkout_session(self, *, amount_cents: int, product_name: str,
                                metadata: Dict[str, str]) -> CheckoutSession:
        ...

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        ...


class StripeGateway:
    def __init__(self, settings: Settings):
        self._api_key = settings.stripe_secret_key
        self._currency = settings.payment_currency
        self._client_url = settings.client_url.rstrip("/")

    def _check_configured(self) -> None:
        if not self._api_key:
            raise DependencyError("Payment gateway is not configured")

    @staticmethod
    def _to_session(session: Any) -> CheckoutSession:
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return CheckoutSession(
            id=session["id"],
            url=session.get("url"),
            payment_intent=payment_intent,
            payment_status=session.get("payment_status"),
            amount_total=session.get("amount_total"),
            currency=session.get("currency"),
            metadata=dict(session.get("metadata") or {}),
        )

    def create_checkout_session(self, *, amount_cents: int, product_name: str,
                                metadata: Dict[str, str]) -> CheckoutSession:
        self._check_configured()
        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {"name": product_name, "metadata": metadata},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }],
                success_url=f"{self._client_url}/dashboard/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self._client_url}/dashboard/payment-cancel",
                metadata=metadata,
            )
        except stripe.StripeError as e:
            logger.error("Stripe session creation failed: %s", e)
            raise DependencyError(f"Payment gateway error: {e.user_message or e}")
        return self._to_session(session)

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        self._check_configured()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        except stripe.StripeError as e:
            logger.error("Stripe session %s lookup failed: %s", session_id, e)
            raise DependencyError(f"Payment gateway error: {e.user_message or e}")
        return self._to_session(session)


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return StripeGateway(get_settings())


def generate_tracking_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{TRACKING_PREFIX}-{now.astimezone(timezone.utc):%Y%m%d}-{secrets.token_hex(3).upper()}"


# ---------------------------
# Operations
# ---------------------------

def start_checkout(gateway: PaymentGateway, *, price: float, service_name: str,
                   metadata: Dict[str, Any]) -> str:
    amount_cents = int(round(price * 100))
    clean = {k: str(metadata[k]) for k in METADATA_KEYS if metadata.get(k) is not None}
    session = gateway.create_checkout_session(
        amount_cents=amount_cents, product_name=service_name, metadata=clean
    )
    logger.info("Checkout session %s created for booking %s", session.id, clean.get("bookingId"))
    return session.url


def record_payment_completion(db: Database, gateway: PaymentGateway,
                              session_id: Optional[str]) -> Dict[str, Any]:
    if not session_id:
        raise ValidationError("session_id is required")
    session = gateway.retrieve_session(session_id)
    if session.payment_status != "paid":
        raise ValidationError(f"Checkout session is not paid (status: {session.payment_status})")
    transactional_id = session.payment_intent
    if not transactional_id:
        raise ValidationError("Checkout session has no payment transaction")

    metadata = session.metadata
    booking_oid = to_object_id(metadata.get("bookingId"), ValidationError,
                               "Checkout session carries no valid booking id")

    tracking_id = generate_tracking_id()
    record = {
        "customerEmail": metadata.get("userEmail"),
        "currency": session.currency,
        "amount": (session.amount_total or 0) / 100,
        "paymentStatus": session.payment_status,
        "bookingId": metadata.get("bookingId"),
        "serviceId": metadata.get("serviceId"),
        "serviceName": metadata.get("serviceName"),
        "serviceImage": metadata.get("serviceImage"),
        "trackingId": tracking_id,
        "paidAt": utcnow(),
    }

    upserted_id = None
    try:
        result = db[PAYMENTS].update_one(
            {"transactionalId": transactional_id},
            {"$setOnInsert": record},
            upsert=True,
        )
        upserted_id = result.upserted_id
    except DuplicateKeyError:
        # A concurrent call inserted the same transaction first
        pass

    if upserted_id is None:
        existing = db[PAYMENTS].find_one({"transactionalId": transactional_id}) or {}
        stored_tracking_id = existing.get("trackingId")
        booking = db[BOOKINGS].find_one({"_id": booking_oid})
        if stored_tracking_id and booking and booking.get("paymentStatus") != lifecycle.PAID:
            # Ledger row exists but the booking update never landed
            logger.warning("Payment %s recorded but booking %s unpaid, re-applying",
                           transactional_id, booking_oid)
            lifecycle.mark_paid(db, booking_oid, stored_tracking_id)
        else:
            logger.info("Payment %s already recorded, booking left unchanged", transactional_id)
        return {
            "success": False,
            "message": "Payment already exists",
            "trackingId": existing.get("trackingId"),
            "transactionalId": transactional_id,
        }

    lifecycle.mark_paid(db, booking_oid, tracking_id)
    logger.info("Payment %s recorded for booking %s", transactional_id, booking_oid)
    record.update({"_id": upserted_id, "transactionalId": transactional_id})
    return {
        "success": True,
        "trackingId": tracking_id,
        "transactionalId": transactional_id,
        "paymentInfo": serialize(record),
    }
