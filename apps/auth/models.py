import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to values read back from stores that drop the offset (SQLite)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UserRole(str, Enum):
    CLIENT = "client"
    COACH = "coach"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    FREE = "free"  # exempt accounts, set out-of-band only
    UNPAID = "unpaid"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


class Provider(str, Enum):
    ENTRA = "entra"
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    APPLE = "apple"


PROVIDER_COLUMNS: Dict[Provider, str] = {
    Provider.ENTRA: "entra_account_id",
    Provider.GOOGLE: "google_account_id",
    Provider.MICROSOFT: "microsoft_account_id",
    Provider.APPLE: "apple_account_id",
}

LEGACY_COLUMN = "azure_ad_id"

# Providers that historically wrote their id into the legacy column
LEGACY_PROVIDERS = frozenset({Provider.ENTRA, Provider.MICROSOFT})


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    email: Optional[str] = Field(default=None, index=True)  # not unique: shared with another app
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: str = Field(default=UserRole.COACH.value)

    # Provider links
    entra_account_id: Optional[str] = Field(default=None, index=True)
    google_account_id: Optional[str] = Field(default=None, index=True)
    microsoft_account_id: Optional[str] = Field(default=None, index=True)
    apple_account_id: Optional[str] = Field(default=None, index=True)
    azure_ad_id: Optional[str] = Field(default=None, index=True)  # legacy generic column

    # Monetization
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = Field(default=None, index=True)
    subscription_status: Optional[str] = Field(default=SubscriptionStatus.UNPAID.value)
    subscription_end_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def to_public(self) -> dict:
        """camelCase representation returned to the frontend."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name or "",
            "lastName": self.last_name or "",
            "phone": self.phone,
            "role": self.role,
            "isActive": self.is_active,
            "stripeCustomerId": self.stripe_customer_id,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "subscriptionStatus": self.subscription_status,
            "subscriptionEndDate": (
                as_utc(self.subscription_end_date).isoformat() if self.subscription_end_date else None
            ),
        }
