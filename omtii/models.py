# omtii/models.py

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import EmailStr
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    BUYER = "buyer"
    VENDOR = "vendor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class AccountType(str, Enum):
    BUYER = "buyer"
    VENDOR = "vendor"


class ServiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# ----------------------------
# Tables owned by the backend
# ----------------------------

class Identity(SQLModel, table=True):
    __tablename__ = "identities"

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True, nullable=False)
    hashed_password: str = Field(nullable=False)
    email_confirmed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    id: int = Field(primary_key=True)  # same as Identity.id
    full_name: str | None = None
    email: str | None = Field(default=None, index=True)
    account_type: str | None = None
    avatar_url: str | None = None
    phone: str | None = None
    bio: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="user_roles_user_id_role_key"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, nullable=False)
    role: Role = Field(nullable=False)


class Category(SQLModel, table=True):
    __tablename__ = "categories"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, nullable=False)
    description: str | None = None
    icon: str | None = None
    user_id: int | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Service(SQLModel, table=True):
    __tablename__ = "services"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, nullable=False)
    title: str = Field(index=True, nullable=False)
    description: str | None = None
    price: float | None = None
    status: ServiceStatus = Field(default=ServiceStatus.PENDING)
    images: list[str] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)


class ServiceRequest(SQLModel, table=True):
    __tablename__ = "service_requests"

    id: int | None = Field(default=None, primary_key=True)
    service_id: int = Field(index=True, nullable=False)
    client_id: int = Field(index=True, nullable=False)
    vendor_id: int = Field(index=True, nullable=False)
    message: str | None = None
    status: RequestStatus = Field(default=RequestStatus.PENDING)
    created_at: datetime = Field(default_factory=utcnow)


class Message(SQLModel, table=True):
    __tablename__ = "messages"

    id: int | None = Field(default=None, primary_key=True)
    service_request_id: int = Field(index=True, nullable=False)
    sender_id: int = Field(index=True, nullable=False)
    receiver_id: int = Field(index=True, nullable=False)
    content: str = Field(nullable=False)
    is_read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, index=True)


# ----------------------------
# View payloads
# ----------------------------

class RegisterForm(SQLModel):
    name: str
    email: EmailStr
    password: str
    account_type: AccountType = AccountType.BUYER


class LoginForm(SQLModel):
    email: str
    password: str
    next: str | None = None


class ProfileUpdate(SQLModel):
    full_name: str | None = None
    phone: str | None = None
    bio: str | None = None
    avatar_url: str | None = None


class ServiceCreate(SQLModel):
    title: str
    description: str | None = None
    price: float | None = Field(default=None, ge=0)
    images: list[str] = []


class ServiceUpdate(SQLModel):
    title: str | None = None
    description: str | None = None
    price: float | None = Field(default=None, ge=0)
    images: list[str] | None = None


class AdminServiceUpdate(ServiceUpdate):
    status: ServiceStatus | None = None


class CategoryCreate(SQLModel):
    name: str
    description: str | None = None
    icon: str | None = None


class CategoryUpdate(SQLModel):
    name: str | None = None
    description: str | None = None
    icon: str | None = None


class UserUpdate(SQLModel):
    full_name: str | None = None
    phone: str | None = None
    bio: str | None = None


class RoleGrant(SQLModel):
    role: Role


class RequestCreate(SQLModel):
    message: str | None = None


class RequestStatusUpdate(SQLModel):
    status: RequestStatus


class MessageCreate(SQLModel):
    content: str


class Notice(SQLModel):
    notice: str
    data: Any = None
