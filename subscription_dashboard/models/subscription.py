from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from subscription_dashboard.models.plan import PlanSummary
from subscription_dashboard.models.user import UserSummary


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionSource(str, Enum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    UPGRADE = "upgrade"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    start_date: datetime
    end_date: datetime
    status: SubscriptionStatus
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    source: SubscriptionSource = SubscriptionSource.MANUAL
    created_at: Optional[datetime] = None
    plan: Optional[PlanSummary] = None
    user: Optional[UserSummary] = None

    def is_current(self, now: Optional[datetime] = None) -> bool:
        """Active and not past its end date. Expiry is derived, never stored first."""
        ts = now or datetime.now(timezone.utc)
        return self.status == SubscriptionStatus.ACTIVE and as_utc(self.end_date) >= ts
