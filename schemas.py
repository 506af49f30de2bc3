"""
Database Schemas for the ImportMobile storefront

Each stored Pydantic model corresponds to a MongoDB collection named after
the lowercase class name:
- User -> "user"
- Product -> "product"
- Order -> "order"
- News -> "news"
- Setting -> "setting"

The *Request / *Create / *Update models are API payloads only.
"""
from enum import Enum
from typing import List, Optional

import phonenumbers
from phonenumbers import NumberParseException
from pydantic import BaseModel, ConfigDict, Field, field_validator

import config


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_VERIFIED = "payment_verified"
    PASSPORT_REQUESTED = "passport_requested"
    PASSPORT_VERIFIED = "passport_verified"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


def normalize_phone(value: str) -> str:
    """Parse a phone number and return it in E.164 form."""
    try:
        parsed = phonenumbers.parse(value, config.DEFAULT_PHONE_REGION)
    except NumberParseException:
        raise ValueError("Invalid phone number format")
    if not phonenumbers.is_possible_number(parsed):
        raise ValueError("Invalid phone number format")
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def chat_id_to_str(value):
    """Telegram chat ids are integers; they are stored as strings."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


# Stored collections

class User(BaseModel):
    phone: str = Field(..., description="E.164 phone, unique login key")
    password: str = Field(..., description="bcrypt hash")
    telegram_id: Optional[str] = Field(None, description="Telegram chat id for notifications")
    telegram_username: Optional[str] = None
    is_admin: bool = False


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0, description="Unit price in sum")
    image: Optional[str] = None
    in_stock: bool = True


class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured when the order was placed")


class Order(BaseModel):
    user_id: str
    items: List[OrderLine]
    delivery_address: str
    contact_phone: str
    additional_phone: Optional[str] = None
    telegram_username: Optional[str] = None
    payment_screenshot: Optional[str] = Field(None, description="Relative URL of the payment proof image")
    total_amount: float = Field(..., ge=0)
    prepayment_amount: float = Field(..., ge=0)
    prepayment_percentage: float = Field(50, ge=0, le=100)
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    passport_data: Optional[str] = None


class News(BaseModel):
    title: str
    content: str
    image: Optional[str] = None
    author: str


class Setting(BaseModel):
    key: str = "shop"
    prepayment_percentage: float = Field(50, ge=0, le=100)


# Auth payloads

class RegisterRequest(Payload):
    phone: str
    password: str = Field(..., min_length=config.PASSWORD_MIN_LENGTH)
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return normalize_phone(value)

    @field_validator("telegram_id", mode="before")
    @classmethod
    def _telegram_id(cls, value):
        return chat_id_to_str(value)


class LoginRequest(Payload):
    phone: str
    password: str = Field(..., min_length=1)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return normalize_phone(value)


class AccountUpdate(Payload):
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None

    @field_validator("telegram_id", mode="before")
    @classmethod
    def _telegram_id(cls, value):
        return chat_id_to_str(value)


class AccountOut(BaseModel):
    id: str
    phone: str
    is_admin: bool
    telegram_id: Optional[str] = None
    telegram_username: Optional[str] = None


class AuthResponse(BaseModel):
    token: str
    user: AccountOut


# Catalog payloads

class ProductCreate(Payload):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    in_stock: bool = True


class ProductUpdate(Payload):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    in_stock: Optional[bool] = None


# Order payloads

class OrderLineRequest(Payload):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class OrderCreate(Payload):
    items: List[OrderLineRequest] = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    contact_phone: str = Field(..., min_length=1)
    additional_phone: Optional[str] = None
    telegram_username: Optional[str] = None
    payment_screenshot: Optional[str] = None
    prepayment_percentage: Optional[float] = Field(None, ge=0, le=100)


class StatusUpdate(Payload):
    status: OrderStatus


class PassportUpdate(Payload):
    passport_data: str = Field(..., min_length=1)


class SettingsUpdate(Payload):
    prepayment_percentage: float = Field(..., ge=0, le=100)


# News payloads

class NewsCreate(Payload):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    image: Optional[str] = None


class NewsUpdate(Payload):
    title: Optional[str] = Field(None, min_length=1)
    content: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None
