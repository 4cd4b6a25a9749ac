import json

import pytest

from apps.auth.errors import InvalidToken, UnverifiedEvent
from apps.auth.identity import IdentityClaims
from apps.auth.models import Provider
from config import Settings
from database import Database


class FakeVerifier:
    """Maps bearer tokens straight to claims."""

    def __init__(self):
        self.tokens = {}
        self.closed = False

    def register(self, token, claims):
        self.tokens[token] = claims

    async def authenticate(self, authorization):
        if not authorization or not authorization.startswith("Bearer "):
            raise InvalidToken("No token provided")
        claims = self.tokens.get(authorization[len("Bearer "):])
        if claims is None:
            raise InvalidToken()
        return claims

    async def close(self):
        self.closed = True


class FakeGateway:
    def __init__(self):
        self.subscriptions = {}
        self.prices = {}
        self.checkout_calls = []
        self.portal_calls = []
        self.price_lookups = []

    def retrieve_subscription(self, subscription_id):
        return self.subscriptions[subscription_id]

    def find_price_by_lookup_key(self, lookup_key):
        self.price_lookups.append(lookup_key)
        return self.prices.get(lookup_key)

    def create_checkout_session(self, **params):
        self.checkout_calls.append(params)
        return "https://checkout.stripe.test/c/pay/cs_test_1"

    def create_portal_session(self, customer_id, return_url):
        self.portal_calls.append((customer_id, return_url))
        return "https://billing.stripe.test/p/session/bps_1"

    def verify_event(self, payload, sig_header):
        if sig_header != "valid":
            raise UnverifiedEvent()
        return json.loads(payload)


def make_claims(provider=Provider.GOOGLE, provider_id="google-sub-1", email="coach@example.com", **kwargs):
    return IdentityClaims(provider=provider, provider_id=provider_id, email=email, **kwargs)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        DOMAIN="https://app.example.com",
        STRIPE_PRICE_ID="price_default",
        STRIPE_DEFAULT_LOOKUP_KEY="coach_monthly",
        ADMIN_EMAILS="boss@example.com",
        ADMIN_GROUP_ID="admin-group",
        ALLOWED_ORIGINS="https://app.example.com,https://*.azurestaticapps.net",
        DB_CONNECT_BACKOFF_SECONDS=0,
        DB_CONNECT_BACKOFF_MAX_SECONDS=0,
    )


@pytest.fixture
def db(tmp_path):
    database = Database(
        f"sqlite:///{tmp_path / 'accounts.db'}",
        backoff_seconds=0,
        backoff_max_seconds=0,
    )
    database.connect()
    database.create_db_and_tables()
    yield database
    database.dispose()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def gateway():
    return FakeGateway()
