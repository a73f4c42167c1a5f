import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import lifecycle
import payments
from config import Settings, get_settings
from database import (
    BOOKINGS, PAYMENTS, SERVICES, USERS,
    create_document, delete_result, ensure_indexes, get_db, get_documents,
    insert_result, serialize, to_object_id, update_result, utcnow,
)
from errors import DependencyError, DomainError, NotFoundError, ValidationError
from payments import PaymentGateway, get_payment_gateway
from schemas import (
    AssignDecorator, BookingCreate, CheckoutRequest, RoleUpdate, ServiceCreate,
    ServiceUpdate, UserCreate,
)
from security import verify_admin, verify_token

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(get_db())
    logger.info("Style Decor API started")
    yield


app = FastAPI(title="Style Decor API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------
# Error handlers
# ---------------------------

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        problems.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return JSONResponse(status_code=400, content=ValidationError("; ".join(problems)).to_body())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        message = f"Route not found: {request.method} {request.url.path}"
        code = "NotFoundError"
    else:
        message = str(exc.detail)
        code = "HTTPError"
    return JSONResponse(status_code=exc.status_code,
                        content={"success": False, "message": message, "code": code})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    err = DependencyError(f"Database operation failed: {str(exc)[:100]}")
    return JSONResponse(status_code=err.status_code, content=err.to_body())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500,
                        content={"success": False, "message": "Internal server error", "code": "InternalError"})


# ---------------------------
# Health & Utility
# ---------------------------

@app.get("/")
def read_root():
    return {"message": "Style Decor API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db), cfg: Settings = Depends(get_settings)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": cfg.database_name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["connection_status"] = "Connected"
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


@app.get("/schema")
def get_schema_models():
    from schemas import Booking, Payment, Service, User
    return {
        "models": [
            {"name": "User", "collection": USERS, "fields": list(User.model_fields.keys())},
            {"name": "Service", "collection": SERVICES, "fields": list(Service.model_fields.keys())},
            {"name": "Booking", "collection": BOOKINGS, "fields": list(Booking.model_fields.keys())},
            {"name": "Payment", "collection": PAYMENTS, "fields": list(Payment.model_fields.keys())},
        ]
    }


# ---------------------------
# Users
# ---------------------------

@app.post("/users")
def create_user(payload: UserCreate, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db[USERS].find_one({"email": email}):
        raise ValidationError("User already exists")
    doc = {
        "email": email,
        "name": payload.name,
        "photoURL": payload.photoURL,
        "role": "user",
        "status": "none",
    }
    try:
        new_id = create_document(db, USERS, doc)
    except DuplicateKeyError:
        raise ValidationError("User already exists")
    logger.info("Registered user %s", email)
    return insert_result(new_id)


@app.get("/users")
def list_users(searchText: str = "", sortOrder: str = Query("asc", pattern="^(asc|desc)$"),
               admin: Dict[str, Any] = Depends(verify_admin), db: Database = Depends(get_db)):
    pattern = re.escape(searchText)
    filt = {
        "$or": [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    }
    return get_documents(db, USERS, filt, sort="name", direction=-1 if sortOrder == "desc" else 1)


@app.get("/users/active-decorators")
def list_active_decorators(email: str = Depends(verify_token), db: Database = Depends(get_db)):
    return get_documents(db, USERS, {"role": "decorator", "status": "active"})


@app.get("/users/{email}")
def get_user(email: str, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"email": email.lower()})
    if not user:
        raise NotFoundError("User not found")
    return serialize(user)


@app.patch("/users/{user_id}/role")
def update_user_role(user_id: str, payload: RoleUpdate,
                     admin: Dict[str, Any] = Depends(verify_admin), db: Database = Depends(get_db)):
    result = db[USERS].update_one(
        {"_id": to_object_id(user_id)},
        {"$set": {"role": payload.role, "status": payload.status}},
    )
    if result.matched_count == 0:
        raise NotFoundError("User not found")
    logger.info("User %s role set to %s by %s", user_id, payload.role, admin.get("email"))
    return update_result(result)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, admin: Dict[str, Any] = Depends(verify_admin), db: Database = Depends(get_db)):
    result = db[USERS].delete_one({"_id": to_object_id(user_id)})
    if result.deleted_count == 0:
        raise NotFoundError("User not found")
    logger.info("User %s deleted by %s", user_id, admin.get("email"))
    return delete_result(result)


# ---------------------------
# Services
# ---------------------------

@app.post("/services")
def create_service(data: ServiceCreate, admin: Dict[str, Any] = Depends(verify_admin),
                   db: Database = Depends(get_db)):
    doc = data.model_dump()
    doc["senderEmail"] = doc.get("senderEmail") or admin.get("email")
    return insert_result(create_document(db, SERVICES, doc))


@app.get("/services")
def list_services(limit: int = Query(0, ge=0), db: Database = Depends(get_db)):
    return get_documents(db, SERVICES, sort="createdAt", limit=limit)


@app.get("/services/{service_id}")
def get_service(service_id: str, db: Database = Depends(get_db)):
    svc = db[SERVICES].find_one({"_id": to_object_id(service_id)})
    if not svc:
        raise NotFoundError("Service not found")
    return serialize(svc)


@app.patch("/services/{service_id}")
def update_service(service_id: str, payload: ServiceUpdate,
                   admin: Dict[str, Any] = Depends(verify_admin), db: Database = Depends(get_db)):
    update = payload.model_dump(exclude_unset=True)
    if not update:
        raise ValidationError("No fields to update")
    update["updatedAt"] = utcnow()
    result = db[SERVICES].update_one({"_id": to_object_id(service_id)}, {"$set": update})
    if result.matched_count == 0:
        raise NotFoundError("Service not found")
    return update_result(result)


@app.delete("/services/{service_id}")
def delete_service(service_id: str, admin: Dict[str, Any] = Depends(verify_admin),
                   db: Database = Depends(get_db)):
    result = db[SERVICES].delete_one({"_id": to_object_id(service_id)})
    if result.deleted_count == 0:
        raise NotFoundError("Service not found")
    return delete_result(result)


# ---------------------------
# Bookings
# ---------------------------

@app.post("/bookings")
def create_booking(data: BookingCreate, email: str = Depends(verify_token), db: Database = Depends(get_db)):
    doc = data.model_dump()
    doc["userEmail"] = doc.get("userEmail") or email
    return insert_result(lifecycle.create_booking(db, doc))


@app.get("/bookings")
def list_bookings(email: Optional[str] = None, paymentStatus: Optional[str] = None,
                  deliveryStatus: Optional[str] = None,
                  caller: str = Depends(verify_token), db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if email:
        filt["userEmail"] = email
    if paymentStatus:
        filt["paymentStatus"] = paymentStatus
    if deliveryStatus:
        filt["deliveryStatus"] = deliveryStatus
    return get_documents(db, BOOKINGS, filt, sort="createdAt")


@app.get("/bookings/decorator/{decorator_email}")
def list_decorator_bookings(decorator_email: str, caller: str = Depends(verify_token),
                            db: Database = Depends(get_db)):
    return get_documents(db, BOOKINGS, {"decoratorEmail": decorator_email}, sort="createdAt")


@app.get("/bookings/decorator-earnings/{decorator_email}")
def list_decorator_earnings(decorator_email: str, caller: str = Depends(verify_token),
                            db: Database = Depends(get_db)):
    filt = {"decoratorEmail": decorator_email, "deliveryStatus": lifecycle.COMPLETED}
    return get_documents(db, BOOKINGS, filt, sort="completedAt")


@app.get("/bookings/{booking_id}")
def get_booking(booking_id: str, caller: str = Depends(verify_token), db: Database = Depends(get_db)):
    return lifecycle.get_booking(db, booking_id)


@app.patch("/bookings/{booking_id}")
def update_booking(booking_id: str, changes: Dict[str, Any] = Body(...),
                   caller: str = Depends(verify_token), db: Database = Depends(get_db)):
    return lifecycle.update_booking(db, booking_id, changes)


@app.delete("/bookings/{booking_id}")
def delete_booking(booking_id: str, caller: str = Depends(verify_token), db: Database = Depends(get_db)):
    result = db[BOOKINGS].delete_one({"_id": to_object_id(booking_id)})
    if result.deleted_count == 0:
        raise NotFoundError("Booking not found")
    return delete_result(result)


@app.patch("/bookings/{booking_id}/assign-decorator")
def assign_decorator(booking_id: str, payload: AssignDecorator,
                     caller: str = Depends(verify_token), db: Database = Depends(get_db)):
    return lifecycle.assign_decorator(
        db, booking_id, payload.decoratorId, payload.decoratorName, payload.decoratorEmail
    )


@app.patch("/bookings/{booking_id}/decorator-action")
def decorator_action(booking_id: str, action: Optional[str] = None,
                     caller: str = Depends(verify_token), db: Database = Depends(get_db),
                     cfg: Settings = Depends(get_settings)):
    return lifecycle.decorator_action(db, booking_id, action, strict_price=cfg.strict_price_parsing)


# ---------------------------
# Payments
# ---------------------------

@app.post("/create-checkout-session")
def create_checkout_session(data: CheckoutRequest, gateway: PaymentGateway = Depends(get_payment_gateway)):
    url = payments.start_checkout(
        gateway, price=data.price, service_name=data.serviceName, metadata=data.metadata()
    )
    return {"url": url}


@app.patch("/payment-success")
def payment_success(session_id: Optional[str] = None, db: Database = Depends(get_db),
                    gateway: PaymentGateway = Depends(get_payment_gateway)):
    return payments.record_payment_completion(db, gateway, session_id)


@app.get("/payments")
def list_payments(email: Optional[str] = None, caller: str = Depends(verify_token),
                  db: Database = Depends(get_db)) -> List[Dict[str, Any]]:
    filt = {"customerEmail": email} if email else {}
    return get_documents(db, PAYMENTS, filt, sort="paidAt")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
