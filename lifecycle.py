"""
Booking lifecycle.

``deliveryStatus`` only moves forward:

    pending -> pending-pickup -> assigned -> accepted-decorator -> completed

Re-running the step that produced the current status is allowed so a failed
two-write operation (booking + decorator user) can be retried. Every write
that changes ``deliveryStatus`` is filtered on the allowed source states.
"""
import logging
import math
import re
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.database import Database

from database import BOOKINGS, USERS, serialize, to_object_id, update_result, utcnow
from errors import InvalidInputError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

UNPAID = "unpaid"
PAID = "paid"

PENDING = "pending"
PENDING_PICKUP = "pending-pickup"
ASSIGNED = "assigned"
ACCEPTED = "accepted-decorator"
COMPLETED = "completed"

DELIVERY_ORDER = (PENDING, PENDING_PICKUP, ASSIGNED, ACCEPTED, COMPLETED)

# target -> statuses it may be entered from
TRANSITIONS = {
    PENDING_PICKUP: (PENDING, PENDING_PICKUP),
    ASSIGNED: (PENDING_PICKUP, ASSIGNED),
    ACCEPTED: (ASSIGNED, ACCEPTED),
    COMPLETED: (ACCEPTED, COMPLETED),
}

# decorator user status
DECORATOR_ACTIVE = "active"
DECORATOR_ASSIGNED = "assigned"
DECORATOR_ACCEPTED = "accepted-service"

COMMISSION_RATE = 0.10

ACTION_ACCEPT = "accept"
ACTION_COMPLETED = "completed"
SUPPORTED_ACTIONS = (ACTION_ACCEPT, ACTION_COMPLETED)

# Fields only the lifecycle may write
PROTECTED_FIELDS = frozenset({
    "_id", "paymentStatus", "deliveryStatus", "trackingId", "decoratorCost",
    "decoratorId", "decoratorName", "decoratorEmail",
    "createdAt", "assignedAt", "acceptedAt", "completedAt",
})

_LEADING_NUMBER = re.compile(r"\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)")


def ensure_transition(current: Optional[str], target: str) -> None:
    if current not in TRANSITIONS[target]:
        raise ValidationError(f"Cannot move booking from '{current}' to '{target}'")


def parse_price(value: Any) -> Optional[float]:
    """Lenient decimal parse: numbers as-is, strings by their leading numeric prefix."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        m = _LEADING_NUMBER.match(str(value))
        if not m:
            return None
        number = float(m.group(1))
    return number if math.isfinite(number) else None


def decorator_cost(price: Any, strict: bool = False) -> float:
    number = parse_price(price)
    if number is None:
        if strict:
            raise ValidationError(f"Booking price {price!r} is not a number")
        # Unparseable prices earn no commission
        logger.warning("Unparseable booking price %r, commission set to 0", price)
        number = 0.0
    return number * COMMISSION_RATE


# ---------------------------
# Operations
# ---------------------------

def is_editable(key: str) -> bool:
    """False for operator keys and for any path rooted at a lifecycle field."""
    if any(part.startswith("$") for part in key.split(".")):
        return False
    return key.split(".", 1)[0] not in PROTECTED_FIELDS


def editable_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if is_editable(k)}


def _unchanged() -> Dict[str, Any]:
    return {"acknowledged": True, "matchedCount": 0, "modifiedCount": 0, "upsertedId": None}


def _engaged_elsewhere(db: Database, decorator_id: str, booking_oid: ObjectId) -> bool:
    """True when another booking still holds the decorator in assigned or accepted state."""
    other = db[BOOKINGS].find_one({
        "decoratorId": decorator_id,
        "deliveryStatus": {"$in": [ASSIGNED, ACCEPTED]},
        "_id": {"$ne": booking_oid},
    })
    return other is not None


def _set_decorator_status(db: Database, decorator_id: str, status: str,
                          booking_oid: ObjectId, only_if_free: bool = False) -> Dict[str, Any]:
    if only_if_free and _engaged_elsewhere(db, decorator_id, booking_oid):
        logger.info("Decorator %s busy on another booking, status left as is", decorator_id)
        return _unchanged()
    result = db[USERS].update_one({"_id": ObjectId(decorator_id)}, {"$set": {"status": status}})
    return update_result(result)


def create_booking(db: Database, data: Dict[str, Any]) -> ObjectId:
    doc = editable_fields(data)
    if not doc.get("serviceId"):
        raise ValidationError("serviceId is required")
    doc.update({
        "paymentStatus": UNPAID,
        "deliveryStatus": PENDING,
        "decoratorId": None,
        "decoratorName": None,
        "decoratorEmail": None,
        "createdAt": utcnow(),
    })
    result = db[BOOKINGS].insert_one(doc)
    logger.info("Booking %s created for %s", result.inserted_id, doc.get("userEmail"))
    return result.inserted_id


def mark_paid(db: Database, booking_id: ObjectId, tracking_id: str) -> Dict[str, Any]:
    # Only the first payment moves the booking; a paid booking keeps its tracking id
    result = db[BOOKINGS].update_one(
        {"_id": booking_id, "deliveryStatus": PENDING, "paymentStatus": {"$ne": PAID}},
        {"$set": {
            "paymentStatus": PAID,
            "deliveryStatus": PENDING_PICKUP,
            "trackingId": tracking_id,
        }},
    )
    if result.matched_count == 0:
        logger.warning("Booking %s not in a payable state, left unchanged", booking_id)
    else:
        logger.info("Booking %s paid, tracking id %s", booking_id, tracking_id)
    return update_result(result)


def assign_decorator(db: Database, booking_id: str, decorator_id: str,
                     decorator_name: str, decorator_email: str) -> Dict[str, Any]:
    oid = to_object_id(booking_id, NotFoundError, "Booking not found")
    if not decorator_id or not decorator_name or not decorator_email:
        raise ValidationError("Decorator info missing")
    decorator_oid = to_object_id(decorator_id, ValidationError, "Invalid decorator ID")

    booking = db[BOOKINGS].find_one({"_id": oid})
    if not booking:
        raise NotFoundError("Booking not found")
    ensure_transition(booking.get("deliveryStatus"), ASSIGNED)

    booking_result = db[BOOKINGS].update_one(
        {"_id": oid, "deliveryStatus": {"$in": list(TRANSITIONS[ASSIGNED])}},
        {"$set": {
            "decoratorId": decorator_id,
            "decoratorName": decorator_name,
            "decoratorEmail": decorator_email,
            "assignedAt": utcnow(),
            "deliveryStatus": ASSIGNED,
        }},
    )
    if booking_result.matched_count == 0:
        raise ValidationError("Booking changed state during assignment, retry")

    previous = booking.get("decoratorId")
    if previous and previous != decorator_id and ObjectId.is_valid(previous):
        _set_decorator_status(db, previous, DECORATOR_ACTIVE, oid, only_if_free=True)
        logger.info("Decorator %s released from booking %s", previous, oid)

    decorator_result = db[USERS].update_one(
        {"_id": decorator_oid}, {"$set": {"status": DECORATOR_ASSIGNED}}
    )
    logger.info("Decorator %s assigned to booking %s", decorator_id, oid)
    return {
        "success": True,
        "bookingResult": update_result(booking_result),
        "decoratorResult": update_result(decorator_result),
    }


def decorator_action(db: Database, booking_id: str, action: Optional[str],
                     strict_price: bool = False) -> Dict[str, Any]:
    oid = to_object_id(booking_id, InvalidInputError, "Invalid booking ID format")

    booking = db[BOOKINGS].find_one({"_id": oid})
    if not booking:
        raise NotFoundError("Booking not found")

    decorator_id = booking.get("decoratorId")
    if not decorator_id:
        raise ValidationError("No decorator assigned to this booking")
    to_object_id(decorator_id, ValidationError, "Invalid decorator ID associated with booking")

    if action == ACTION_ACCEPT:
        target, decorator_status = ACCEPTED, DECORATOR_ACCEPTED
    elif action == ACTION_COMPLETED:
        target, decorator_status = COMPLETED, DECORATOR_ACTIVE
    else:
        raise InvalidInputError(
            "Invalid action. Supported actions: " + ", ".join(SUPPORTED_ACTIONS)
        )
    current = booking.get("deliveryStatus")
    ensure_transition(current, target)

    if current == target:
        # Retry of a finished step: the booking keeps its timestamps and cost,
        # the decorator is only repaired when no other booking holds them.
        decorator_result = _set_decorator_status(db, decorator_id, decorator_status, oid,
                                                 only_if_free=True)
        logger.info("Booking %s already %s, booking left unchanged", oid, target)
        return {
            "success": True,
            "bookingResult": _unchanged(),
            "decoratorResult": decorator_result,
        }

    now = utcnow()
    if target == ACCEPTED:
        booking_set = {"deliveryStatus": ACCEPTED, "acceptedAt": now}
    else:
        booking_set = {
            "deliveryStatus": COMPLETED,
            "completedAt": now,
            "decoratorCost": decorator_cost(booking.get("price"), strict=strict_price),
        }
    booking_result = db[BOOKINGS].update_one(
        {"_id": oid, "deliveryStatus": current},
        {"$set": booking_set},
    )
    if booking_result.matched_count == 0:
        raise ValidationError("Booking changed state during update, retry")
    decorator_result = _set_decorator_status(db, decorator_id, decorator_status, oid,
                                             only_if_free=target == COMPLETED)
    logger.info("Booking %s moved to %s by decorator %s", oid, target, decorator_id)
    return {
        "success": True,
        "bookingResult": update_result(booking_result),
        "decoratorResult": decorator_result,
    }


def update_booking(db: Database, booking_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Customer edits; allowed only while unpaid and never touches lifecycle fields."""
    oid = to_object_id(booking_id)
    booking = db[BOOKINGS].find_one({"_id": oid})
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.get("paymentStatus") == PAID:
        raise ValidationError("Paid bookings can no longer be edited")
    editable = editable_fields(changes)
    if not editable:
        raise ValidationError("No editable fields supplied")
    result = db[BOOKINGS].update_one(
        {"_id": oid, "paymentStatus": {"$ne": PAID}}, {"$set": editable}
    )
    return update_result(result)


def get_booking(db: Database, booking_id: str) -> Dict[str, Any]:
    booking = db[BOOKINGS].find_one({"_id": to_object_id(booking_id)})
    if not booking:
        raise NotFoundError("Booking not found")
    return serialize(booking)
