from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import RepeatInterval, TransactionType


class SignupIn(BaseModel):
    name: str = Field(default="", max_length=120)
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("name", "email")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class CategoryIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[int] = Field(default=None, alias="parentId")


class TransactionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    currency: str = Field(..., min_length=3, max_length=3)
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    subcategory_id: Optional[int] = Field(default=None, alias="subcategoryId")
    description: Optional[str] = None
    date: Optional[datetime] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


class TransactionPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=14, decimal_places=2
    )
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    subcategory_id: Optional[int] = Field(default=None, alias="subcategoryId")
    description: Optional[str] = None
    date: Optional[datetime] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() if value is not None else None


class ReminderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    due_at: Optional[datetime] = Field(default=None, alias="dueAt")
    repeat_interval: RepeatInterval = Field(
        default=RepeatInterval.none, alias="repeatInterval"
    )


class ReminderPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    due_at: Optional[datetime] = Field(default=None, alias="dueAt")
    repeat_interval: Optional[RepeatInterval] = Field(
        default=None, alias="repeatInterval"
    )
    is_active: Optional[bool] = Field(default=None, alias="isActive")


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int
