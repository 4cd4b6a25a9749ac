import json
import re
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    PROJECT_NAME: str = "Coach Accounts API"
    SERVICE_NAME: str = "coach-accounts-api"
    API_VERSION: str = "dev-local"
    LOG_LEVEL: str = "INFO"

    # Database (shared Users table)
    DATABASE_URL: str = "sqlite:///./accounts.db"
    DB_CONNECT_MAX_ATTEMPTS: int = 4
    DB_CONNECT_BACKOFF_SECONDS: float = 5.0
    DB_CONNECT_BACKOFF_MAX_SECONDS: float = 20.0
    DB_CONNECT_TIMEOUT_SECONDS: int = 45
    DB_POOL_SIZE: int = 10
    DB_POOL_TIMEOUT_SECONDS: int = 30

    # Entra External ID
    ENTRA_TENANT_SUBDOMAIN: str = ""
    ENTRA_CLIENT_ID: str = ""

    # Social providers
    GOOGLE_CLIENT_IDS: str = ""  # comma separated: web, iOS, Android
    MICROSOFT_CLIENT_ID: str = ""
    APPLE_CLIENT_ID: str = ""

    JWKS_CACHE_SECONDS: int = 86400
    IDENTITY_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Admin detection
    ADMIN_GROUP_ID: str = ""
    ADMIN_EMAILS: str = ""  # comma separated

    # Monetization
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_ID: Optional[str] = None
    STRIPE_PRICE_MAP: Dict[str, str] = Field(default_factory=dict)
    STRIPE_DEFAULT_LOOKUP_KEY: str = "coach_monthly"
    ENABLE_PRICE_LOOKUP_FALLBACK: bool = True
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Frontend
    DOMAIN: str = "http://localhost:5173"
    ALLOWED_ORIGINS: str = (
        "http://localhost:5173,http://localhost:5174,"
        "https://schedulecoaches.com,https://www.schedulecoaches.com,"
        "https://*.azurestaticapps.net"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def entra_issuer(self) -> str:
        sub = self.ENTRA_TENANT_SUBDOMAIN
        return f"https://{sub}.ciamlogin.com/{sub}.onmicrosoft.com/v2.0"

    @property
    def entra_jwks_uri(self) -> str:
        sub = self.ENTRA_TENANT_SUBDOMAIN
        return f"https://{sub}.ciamlogin.com/{sub}.onmicrosoft.com/discovery/v2.0/keys"

    @property
    def google_client_ids(self) -> List[str]:
        return _split_csv(self.GOOGLE_CLIENT_IDS)

    @property
    def admin_emails(self) -> List[str]:
        return [email.lower() for email in _split_csv(self.ADMIN_EMAILS)]

    @property
    def allowed_origins(self) -> List[str]:
        return _split_csv(self.ALLOWED_ORIGINS)

    @property
    def allowed_origin_regex(self) -> Optional[str]:
        """Alternation regex for the wildcard entries of ALLOWED_ORIGINS."""
        patterns = [
            re.escape(origin).replace(r"\*", ".*")
            for origin in self.allowed_origins
            if "*" in origin
        ]
        if not patterns:
            return None
        return "^(" + "|".join(patterns) + ")$"

    @property
    def price_map(self) -> Dict[str, str]:
        prices = dict(self.STRIPE_PRICE_MAP)
        if self.STRIPE_PRICE_ID:
            prices.setdefault(self.STRIPE_DEFAULT_LOOKUP_KEY, self.STRIPE_PRICE_ID)
        return prices

    def describe(self) -> str:
        """Configuration summary safe for logs (no secrets)."""
        return json.dumps({
            "database": "sqlite" if self.DATABASE_URL.startswith("sqlite") else "external",
            "entra": bool(self.ENTRA_CLIENT_ID and self.ENTRA_TENANT_SUBDOMAIN),
            "google": bool(self.google_client_ids),
            "microsoft": bool(self.MICROSOFT_CLIENT_ID),
            "apple": bool(self.APPLE_CLIENT_ID),
            "stripe": bool(self.STRIPE_SECRET_KEY),
            "webhook_secret": bool(self.STRIPE_WEBHOOK_SECRET),
        })


settings = Settings()
