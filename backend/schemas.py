import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from order_lifecycle import PaymentMethod, PaymentStatus
from permissions import ROLES, WAITER

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")
EMAIL_RE = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")
STRONG_PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*[0-9])(?=.*[!@#$%^&*])")


def _check_strong_password(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not STRONG_PASSWORD_RE.match(v):
        raise ValueError(
            "Password must contain at least one lowercase letter, one uppercase letter, "
            "one number, and one special character"
        )
    return v


def _check_email(v: str) -> str:
    v = v.strip().lower()
    if not EMAIL_RE.match(v):
        raise ValueError("Please provide a valid email address")
    return v


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class ProfileIn(BaseModel):
    first_name: str = Field(max_length=50)
    last_name: str = Field(max_length=50)
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not PHONE_RE.match(v):
            raise ValueError("Please provide a valid phone number")
        return v


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    role: str = WAITER
    profile: ProfileIn
    restaurant_id: Optional[str] = None
    permissions: List[str] = []

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 30:
            raise ValueError("Username cannot exceed 30 characters")
        if not USERNAME_RE.match(v):
            raise ValueError("Username can only contain letters, numbers, and underscores")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_strong_password(v)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        if v not in ROLES:
            raise ValueError(f"Role must be one of: {', '.join(ROLES)}")
        return v


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        return _check_strong_password(v)


class RefreshRequest(BaseModel):
    refresh_token: str


class StepUpRequest(BaseModel):
    password: str
    operation: str


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    restaurant_id: Optional[str] = None
    permissions: List[str] = []
    is_active: bool
    last_login: Optional[datetime] = None


class OrderItemCreate(BaseModel):
    menu_item_id: str
    name: str = Field(min_length=1, max_length=100)
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)
    customizations: List[str] = []
    notes: Optional[str] = Field(default=None, max_length=200)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(min_length=1)
    tax: float = Field(default=0, ge=0)
    discount: float = Field(default=0, ge=0)
    table_id: Optional[str] = None
    customer_id: Optional[int] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    restaurant_id: Optional[str] = None


class OrderUpdate(BaseModel):
    items: Optional[List[OrderItemCreate]] = Field(default=None, min_length=1)
    subtotal: Optional[float] = Field(default=None, ge=0)
    tax: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = Field(default=None, ge=0)
    table_id: Optional[str] = None
    customer_id: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    # omitted means unchanged; null is not a value these columns can hold
    @field_validator("subtotal", "tax", "discount", "payment_status")
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class StatusUpdate(BaseModel):
    status: str


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: str
    name: str
    price: float
    quantity: int
    customizations: List[str] = []
    notes: Optional[str] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    restaurant_id: str
    table_id: Optional[str] = None
    customer_id: Optional[int] = None
    items: List[OrderItemResponse]
    subtotal: float
    tax: float
    discount: float
    total: float
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    created_by: int
    created_at: datetime
    updated_at: datetime
