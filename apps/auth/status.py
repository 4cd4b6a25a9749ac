from dataclasses import asdict, dataclass

from apps.auth.models import SubscriptionStatus, User, UserRole

ACCESS_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.FREE.value,
    SubscriptionStatus.TRIALING.value,
})

PAYMENT_REQUIRED_STATUSES = frozenset({
    SubscriptionStatus.UNPAID.value,
    SubscriptionStatus.CANCELED.value,
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
})


@dataclass(frozen=True)
class StatusFlags:
    hasActiveSubscription: bool
    needsProfileCompletion: bool
    needsPayment: bool
    isInGracePeriod: bool

    def to_dict(self) -> dict:
        return asdict(self)


def project_status(user: User) -> StatusFlags:
    """Derive the access flags from stored billing state. Never persisted."""
    status = user.subscription_status
    return StatusFlags(
        hasActiveSubscription=status in ACCESS_STATUSES or user.role == UserRole.ADMIN.value,
        needsProfileCompletion=(
            user.stripe_customer_id is None and status == SubscriptionStatus.UNPAID.value
        ),
        needsPayment=user.role == UserRole.COACH.value and status in PAYMENT_REQUIRED_STATUSES,
        isInGracePeriod=status == SubscriptionStatus.PAST_DUE.value,
    )


def public_user_with_status(user: User) -> dict:
    return {**user.to_public(), **project_status(user).to_dict()}
