from datetime import datetime, timezone

import pytest

from apps.auth.models import SubscriptionStatus, User
from apps.auth.status import project_status, public_user_with_status

ALL_STATUSES = [status.value for status in SubscriptionStatus] + [None]


@pytest.mark.parametrize("status", ["active", "free", "trialing"])
def test_access_statuses_grant_access(status):
    assert project_status(User(role="coach", subscription_status=status)).hasActiveSubscription


@pytest.mark.parametrize("status", ["unpaid", "past_due", "canceled", "incomplete", "incomplete_expired", None])
def test_other_statuses_deny_access_to_non_admins(status):
    for role in ("coach", "client"):
        assert not project_status(User(role=role, subscription_status=status)).hasActiveSubscription


@pytest.mark.parametrize("status", ALL_STATUSES)
def test_admin_always_has_access(status):
    assert project_status(User(role="admin", subscription_status=status)).hasActiveSubscription


def test_needs_payment_only_for_coaches():
    assert project_status(User(role="coach", subscription_status="canceled")).needsPayment
    assert not project_status(User(role="client", subscription_status="canceled")).needsPayment
    assert not project_status(User(role="coach", subscription_status="past_due")).needsPayment


def test_grace_period_is_past_due():
    flags = project_status(User(role="coach", subscription_status="past_due"))

    assert flags.isInGracePeriod
    assert not flags.hasActiveSubscription


def test_profile_completion_requires_no_customer_and_unpaid():
    assert project_status(User(subscription_status="unpaid")).needsProfileCompletion
    assert not project_status(User(subscription_status="unpaid", stripe_customer_id="cus_1")).needsProfileCompletion
    assert not project_status(User(subscription_status="active")).needsProfileCompletion


def test_projection_is_deterministic():
    user = User(role="coach", subscription_status="trialing")

    assert project_status(user) == project_status(user)


def test_public_user_merges_flags_in_camel_case():
    user = User(
        id="22222222-2222-4222-8222-222222222222",
        email="coach@example.com",
        first_name=None,
        subscription_status="active",
        subscription_end_date=datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc),
    )

    body = public_user_with_status(user)

    assert body["id"] == "22222222-2222-4222-8222-222222222222"
    assert body["firstName"] == ""
    assert body["subscriptionEndDate"] == "2026-01-31T12:00:00+00:00"
    assert body["hasActiveSubscription"] is True
    assert body["needsPayment"] is False
    assert "stripe_customer_id" not in body
