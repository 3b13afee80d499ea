"""
Plan model: a purchasable tier with price, duration and feature set.

`id` is the one canonical identifier clients send back. `price_id` (external
price reference) and `slug` are alternate identifiers used only when resolving
provider metadata.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price: float
    duration_days: int
    features: List[str]
    price_id: Optional[str] = None
    slug: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PlanSummary(BaseModel):
    """Plan fields joined onto a subscription."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price: float
    duration_days: int
    features: List[str]


class PlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    price: float = Field(ge=0)
    duration_days: int = Field(ge=1)
    features: List[str] = Field(min_length=1)
    price_id: Optional[str] = None
    slug: Optional[str] = None
    id: Optional[str] = None

    @field_validator("features")
    @classmethod
    def _features_not_blank(cls, value: List[str]) -> List[str]:
        cleaned = [f.strip() for f in value if f and f.strip()]
        if not cleaned:
            raise ValueError("at least one feature is required")
        return cleaned


class PlanUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    price: Optional[float] = Field(default=None, ge=0)
    duration_days: Optional[int] = Field(default=None, ge=1)
    features: Optional[List[str]] = Field(default=None, min_length=1)
    price_id: Optional[str] = None
    slug: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("name", "price", "duration_days", "features", "is_active")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value
