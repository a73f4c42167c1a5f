"""
Database Schemas for the Style Decor marketplace

Each Pydantic model describes one MongoDB collection. The collection name is
the lowercase plural of the class name (e.g., Booking -> "bookings").
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["user", "decorator", "admin"]
UserStatus = Literal["none", "active", "assigned", "accepted-service"]
PaymentStatus = Literal["unpaid", "paid"]
DeliveryStatus = Literal["pending", "pending-pickup", "assigned", "accepted-decorator", "completed"]


class User(BaseModel):
    """
    Customers, decorators and admins. Created on first sign-in.
    Collection: "users"
    """
    email: EmailStr = Field(..., description="Unique identity email")
    name: Optional[str] = Field(None, description="Display name")
    photoURL: Optional[str] = None
    role: Role = "user"
    status: UserStatus = Field("none", description="Only meaningful for decorators")
    createdAt: Optional[datetime] = None


class Service(BaseModel):
    """
    Decoration packages offered on the marketplace.
    Collection: "services"
    """
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    senderEmail: Optional[EmailStr] = Field(None, description="Owner of the listing")
    createdAt: Optional[datetime] = None


class Booking(BaseModel):
    """
    A customer's booking of a service and its delivery lifecycle.
    Collection: "bookings"
    """
    model_config = ConfigDict(extra="allow")

    userEmail: EmailStr
    userName: Optional[str] = None
    serviceId: str
    serviceName: Optional[str] = None
    serviceImage: Optional[str] = None
    price: Union[float, str, None] = Field(None, description="Parsed leniently at completion")
    paymentStatus: PaymentStatus = "unpaid"
    deliveryStatus: DeliveryStatus = "pending"
    decoratorId: Optional[str] = None
    decoratorName: Optional[str] = None
    decoratorEmail: Optional[EmailStr] = None
    trackingId: Optional[str] = None
    decoratorCost: Optional[float] = Field(None, description="Set only once completed")
    createdAt: Optional[datetime] = None
    assignedAt: Optional[datetime] = None
    acceptedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


class Payment(BaseModel):
    """
    One record per completed gateway transaction. Never updated.
    Collection: "payments"
    """
    transactionalId: str = Field(..., description="Gateway payment intent id, unique")
    customerEmail: Optional[EmailStr] = None
    currency: Optional[str] = None
    amount: float
    paymentStatus: str
    bookingId: str
    serviceId: Optional[str] = None
    serviceName: Optional[str] = None
    serviceImage: Optional[str] = None
    trackingId: str
    paidAt: datetime


# Request bodies

class UserCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: EmailStr
    name: Optional[str] = None
    photoURL: Optional[str] = None


class RoleUpdate(BaseModel):
    role: Role
    status: UserStatus = "active"


class ServiceCreate(BaseModel):
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    senderEmail: Optional[EmailStr] = None


class ServiceUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None


class BookingCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    serviceId: str
    userEmail: Optional[EmailStr] = None
    userName: Optional[str] = None
    serviceName: Optional[str] = None
    serviceImage: Optional[str] = None
    price: Union[float, str, None] = None


class AssignDecorator(BaseModel):
    decoratorId: str
    decoratorName: str
    decoratorEmail: EmailStr


class CheckoutRequest(BaseModel):
    price: float = Field(..., gt=0)
    bookingId: str
    serviceId: Optional[str] = None
    serviceName: str
    serviceImage: Optional[str] = None
    userEmail: Optional[EmailStr] = None

    def metadata(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"price"})
