import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6, max_length=128)
    monthly_income_cents: int = Field(default=0, ge=0)


class LoginIn(BaseModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    monthly_income_cents: Optional[int] = Field(default=None, ge=0)


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6, max_length=128)


class Preferences(BaseModel):
    notifications: bool


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")
    icon: Optional[str] = Field(default=None, max_length=16)
    tag: Optional[str] = Field(default=None, max_length=40)


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")
    icon: Optional[str] = Field(default=None, max_length=16)
    tag: Optional[str] = Field(default=None, max_length=40)


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=1)
    cashback_cents: int = Field(default=0, ge=0)
    category_id: int
    description: str = Field(..., min_length=1, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2000)


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, ge=1)
    cashback_cents: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2000)


class AskIn(BaseModel):
    question: str = Field(..., min_length=1, max_length=500)
