import copy
import re
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError
import pytest

from database import get_db
from errors import AuthError, DependencyError
from main import app
from payments import CheckoutSession, get_payment_gateway
from security import get_identity_verifier


def _matches(doc: Dict[str, Any], filt: Dict[str, Any]) -> bool:
    for key, cond in filt.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
            continue
        value = doc.get(key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$in":
                    ok = value in arg
                elif op == "$ne":
                    ok = value != arg
                elif op == "$regex":
                    flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
                    ok = isinstance(value, str) and re.search(arg, value, flags) is not None
                elif op == "$options":
                    ok = True
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value != cond:
            return False
    return True


class DummyCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key: str, direction: int = 1):
        self._docs.sort(key=lambda d: (d.get(key) is not None, d.get(key)), reverse=direction < 0)
        return self

    def limit(self, n: int):
        if n:
            self._docs = self._docs[:n]
        return self

    def __iter__(self):
        return iter(self._docs)


class DummyCollection:
    """The slice of pymongo's Collection API the app uses."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique_keys: List[str] = []
        self.calls: List[str] = []

    def create_index(self, keys, unique: bool = False):
        if unique:
            self.unique_keys.append(keys[0][0])
        return keys[0][0]

    def _check_unique(self, doc: Dict[str, Any]) -> None:
        for key in self.unique_keys:
            if any(d.get(key) == doc.get(key) for d in self.docs):
                raise DuplicateKeyError(f"E11000 duplicate key error {self.name}.{key}", 11000)

    def find_one(self, filt: Optional[Dict[str, Any]] = None):
        self.calls.append("find_one")
        for doc in self.docs:
            if _matches(doc, filt or {}):
                return copy.deepcopy(doc)
        return None

    def find(self, filt: Optional[Dict[str, Any]] = None):
        self.calls.append("find")
        return DummyCursor([copy.deepcopy(d) for d in self.docs if _matches(d, filt or {})])

    def insert_one(self, doc: Dict[str, Any]):
        self.calls.append("insert_one")
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"], acknowledged=True)

    def update_one(self, filt: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        self.calls.append("update_one")
        for doc in self.docs:
            if _matches(doc, filt):
                before = copy.deepcopy(doc)
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=int(doc != before),
                                       upserted_id=None, acknowledged=True)
        if upsert:
            new = {k: v for k, v in filt.items() if not k.startswith("$") and not isinstance(v, dict)}
            new.update(copy.deepcopy(update.get("$setOnInsert", {})))
            new.update(copy.deepcopy(update.get("$set", {})))
            new["_id"] = ObjectId()
            self._check_unique(new)
            self.docs.append(new)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=new["_id"], acknowledged=True)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None, acknowledged=True)

    def delete_one(self, filt: Dict[str, Any]):
        self.calls.append("delete_one")
        for i, doc in enumerate(self.docs):
            if _matches(doc, filt):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1, acknowledged=True)
        return SimpleNamespace(deleted_count=0, acknowledged=True)

    def writes(self) -> List[str]:
        return [c for c in self.calls if c in ("insert_one", "update_one", "delete_one")]


class DummyDatabase:
    name = "style_decor_test"

    def __init__(self):
        self._collections: Dict[str, DummyCollection] = {}

    def __getitem__(self, name: str) -> DummyCollection:
        if name not in self._collections:
            self._collections[name] = DummyCollection(name)
        return self._collections[name]

    def list_collection_names(self) -> List[str]:
        return list(self._collections)


class DummyVerifier:
    """Accepts tokens of the form ``valid:<email>``."""

    def verify(self, token: str) -> str:
        if not token.startswith("valid:"):
            raise AuthError("Unauthorized access: Invalid token")
        return token[len("valid:"):]


class DummyGateway:
    def __init__(self):
        self.sessions: Dict[str, CheckoutSession] = {}
        self.created: List[Dict[str, Any]] = []
        self.retrieved: List[str] = []

    def create_checkout_session(self, *, amount_cents, product_name, metadata):
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append({"amount_cents": amount_cents, "product_name": product_name, "metadata": metadata})
        session = CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}",
                                  amount_total=amount_cents, currency="usd", metadata=dict(metadata),
                                  payment_status="unpaid")
        self.sessions[session_id] = session
        return session

    def retrieve_session(self, session_id):
        self.retrieved.append(session_id)
        if session_id not in self.sessions:
            raise DependencyError(f"Payment gateway error: No such checkout.session: {session_id}")
        return self.sessions[session_id]

    def add_paid_session(self, session_id: str, payment_intent: str, booking_id: str,
                         amount_total: int = 50000, user_email: str = "cust@example.com") -> CheckoutSession:
        session = CheckoutSession(
            id=session_id,
            url=f"https://checkout.test/{session_id}",
            payment_intent=payment_intent,
            payment_status="paid",
            amount_total=amount_total,
            currency="usd",
            metadata={
                "bookingId": booking_id,
                "serviceId": "svc-1",
                "serviceName": "Wedding Stage",
                "serviceImage": "https://img.test/stage.png",
                "userEmail": user_email,
            },
        )
        self.sessions[session_id] = session
        return session


def auth(email: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer valid:{email}"}


@pytest.fixture
def db():
    database = DummyDatabase()
    database["payments"].create_index([("transactionalId", 1)], unique=True)
    return database


@pytest.fixture
def gateway():
    return DummyGateway()


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_identity_verifier] = lambda: DummyVerifier()
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    doc = {"email": "admin@example.com", "name": "Ada Admin", "role": "admin", "status": "none"}
    db["users"].insert_one(doc)
    return doc


@pytest.fixture
def decorator(db):
    doc = {"email": "deco@example.com", "name": "Dee Corator", "role": "decorator", "status": "active"}
    db["users"].insert_one(doc)
    return doc


def make_booking(db, delivery_status="pending", payment_status="unpaid", price=500, **extra):
    doc = {
        "serviceId": "svc-1",
        "serviceName": "Wedding Stage",
        "userEmail": "cust@example.com",
        "price": price,
        "paymentStatus": payment_status,
        "deliveryStatus": delivery_status,
        "decoratorId": None,
        "decoratorName": None,
        "decoratorEmail": None,
    }
    doc.update(extra)
    db["bookings"].insert_one(doc)
    return doc["_id"]
