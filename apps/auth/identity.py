"""
Bearer token verification for the four supported identity providers.

The provider is chosen from the (unverified) ``iss`` claim; the token is then
verified against that provider's published JWKS with Authlib and its claims
are normalized into ``IdentityClaims``.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from authlib.common.encoding import urlsafe_b64decode, to_bytes
from authlib.jose import JsonWebKey, JsonWebToken, KeySet
from authlib.jose.errors import ExpiredTokenError, JoseError
from pydantic import BaseModel, Field, ValidationError

from apps.auth.errors import IdentityProviderUnavailable, InvalidToken, TokenExpired
from apps.auth.models import Provider
from config import Settings

logger = logging.getLogger(__name__)

GOOGLE_ISSUERS = ["https://accounts.google.com", "accounts.google.com"]
GOOGLE_JWKS_URI = "https://www.googleapis.com/oauth2/v3/certs"
APPLE_ISSUER = "https://appleid.apple.com"
APPLE_JWKS_URI = "https://appleid.apple.com/auth/keys"
# Personal Microsoft accounts all share this tenant
MICROSOFT_CONSUMER_ISSUER = "https://login.microsoftonline.com/9188040d-6c67-4c5b-b112-36a304b66dad/v2.0"
MICROSOFT_JWKS_URI = "https://login.microsoftonline.com/consumers/discovery/v2.0/keys"

CLOCK_SKEW_SECONDS = 60


class IdentityClaims(BaseModel):
    provider_id: str
    provider: Provider
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    groups: List[str] = Field(default_factory=list)


def _split_name(name: Optional[str]) -> Tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _clean_email(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# --- One normalizer per provider ---

def normalize_entra(payload: Dict[str, Any]) -> IdentityClaims:
    first, last = _split_name(payload.get("name"))
    emails = payload.get("emails") or []
    return IdentityClaims(
        provider_id=payload.get("oid") or payload["sub"],
        provider=Provider.ENTRA,
        email=_clean_email(emails[0] if emails else payload.get("email")),
        # Custom attributes from External ID user flows carry the extension_ prefix
        first_name=payload.get("extension_FirstName") or payload.get("given_name") or first,
        last_name=payload.get("extension_LastName") or payload.get("family_name") or last,
        groups=list(payload.get("groups") or []),
    )


def normalize_google(payload: Dict[str, Any]) -> IdentityClaims:
    first, last = _split_name(payload.get("name"))
    return IdentityClaims(
        provider_id=payload["sub"],
        provider=Provider.GOOGLE,
        email=_clean_email(payload.get("email")),
        first_name=payload.get("given_name") or first,
        last_name=payload.get("family_name") or last,
    )


def normalize_microsoft(payload: Dict[str, Any]) -> IdentityClaims:
    first, last = _split_name(payload.get("name"))
    return IdentityClaims(
        provider_id=payload.get("oid") or payload["sub"],
        provider=Provider.MICROSOFT,
        email=_clean_email(payload.get("email") or payload.get("preferred_username")),
        first_name=payload.get("given_name") or first,
        last_name=payload.get("family_name") or last,
    )


def normalize_apple(payload: Dict[str, Any]) -> IdentityClaims:
    # Apple only sends the name once, to the client, at first sign-in
    return IdentityClaims(
        provider_id=payload["sub"],
        provider=Provider.APPLE,
        email=_clean_email(payload.get("email")),
    )


@dataclass(frozen=True)
class ProviderProfile:
    provider: Provider
    issuers: List[str]
    audiences: List[str]
    jwks_uri: str
    normalize: Callable[[Dict[str, Any]], IdentityClaims]

    @property
    def configured(self) -> bool:
        return bool(self.audiences and self.issuers and self.jwks_uri)


def build_provider_profiles(settings: Settings) -> Dict[Provider, ProviderProfile]:
    return {
        Provider.ENTRA: ProviderProfile(
            provider=Provider.ENTRA,
            issuers=[settings.entra_issuer] if settings.ENTRA_TENANT_SUBDOMAIN else [],
            audiences=[settings.ENTRA_CLIENT_ID] if settings.ENTRA_CLIENT_ID else [],
            jwks_uri=settings.entra_jwks_uri,
            normalize=normalize_entra,
        ),
        Provider.GOOGLE: ProviderProfile(
            provider=Provider.GOOGLE,
            issuers=GOOGLE_ISSUERS,
            audiences=settings.google_client_ids,
            jwks_uri=GOOGLE_JWKS_URI,
            normalize=normalize_google,
        ),
        Provider.MICROSOFT: ProviderProfile(
            provider=Provider.MICROSOFT,
            issuers=[MICROSOFT_CONSUMER_ISSUER],
            audiences=[settings.MICROSOFT_CLIENT_ID] if settings.MICROSOFT_CLIENT_ID else [],
            jwks_uri=MICROSOFT_JWKS_URI,
            normalize=normalize_microsoft,
        ),
        Provider.APPLE: ProviderProfile(
            provider=Provider.APPLE,
            issuers=[APPLE_ISSUER],
            audiences=[settings.APPLE_CLIENT_ID] if settings.APPLE_CLIENT_ID else [],
            jwks_uri=APPLE_JWKS_URI,
            normalize=normalize_apple,
        ),
    }


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise InvalidToken("No token provided")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise InvalidToken("Invalid authorization header")
    return parts[1]


def peek_claims(token: str) -> Dict[str, Any]:
    """Decode the payload segment without verifying it (routing only)."""
    try:
        _, payload_segment, _ = token.split(".")
        payload = json.loads(urlsafe_b64decode(to_bytes(payload_segment)))
    except (ValueError, TypeError) as exc:
        raise InvalidToken() from exc
    if not isinstance(payload, dict):
        raise InvalidToken()
    return payload


def detect_provider(issuer: str) -> Provider:
    if "accounts.google.com" in issuer:
        return Provider.GOOGLE
    if "appleid.apple.com" in issuer:
        return Provider.APPLE
    if "login.microsoftonline.com" in issuer:
        return Provider.MICROSOFT
    return Provider.ENTRA


class IdentityVerifier:
    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.profiles = build_provider_profiles(settings)
        self.cache_seconds = settings.JWKS_CACHE_SECONDS
        self.client = http_client or httpx.AsyncClient(timeout=settings.IDENTITY_HTTP_TIMEOUT_SECONDS)
        self._jwks: Dict[str, Tuple[KeySet, float]] = {}
        self._jwt = JsonWebToken(["RS256"])

    async def close(self):
        await self.client.aclose()

    async def _fetch_key_set(self, uri: str) -> KeySet:
        try:
            response = await self.client.get(uri)
            response.raise_for_status()
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("JWKS fetch failed for %s: %s", uri, exc)
            raise IdentityProviderUnavailable(detail=str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning("JWKS endpoint %s returned %s", uri, exc.response.status_code)
            raise IdentityProviderUnavailable(detail=str(exc)) from exc
        return JsonWebKey.import_key_set(response.json())

    async def get_key_set(self, uri: str, force_refresh: bool = False) -> KeySet:
        cached = self._jwks.get(uri)
        if cached and not force_refresh and time.monotonic() - cached[1] < self.cache_seconds:
            return cached[0]
        key_set = await self._fetch_key_set(uri)
        self._jwks[uri] = (key_set, time.monotonic())
        return key_set

    def _decode(self, token: str, key_set: KeySet, profile: ProviderProfile) -> Dict[str, Any]:
        claims = self._jwt.decode(
            token,
            key_set,
            claims_options={
                "iss": {"essential": True, "values": profile.issuers},
                "aud": {"essential": True, "values": profile.audiences},
                "exp": {"essential": True},
                "sub": {"essential": True},
            },
        )
        claims.validate(leeway=CLOCK_SKEW_SECONDS)
        return dict(claims)

    async def verify(self, token: str) -> IdentityClaims:
        issuer = str(peek_claims(token).get("iss") or "")
        profile = self.profiles[detect_provider(issuer)]
        if not profile.configured:
            raise InvalidToken(f"{profile.provider.value} sign-in is not configured")

        key_set = await self.get_key_set(profile.jwks_uri)
        try:
            try:
                payload = self._decode(token, key_set, profile)
            except ValueError:
                # Unknown kid: the provider may have rotated its keys
                key_set = await self.get_key_set(profile.jwks_uri, force_refresh=True)
                payload = self._decode(token, key_set, profile)
        except ExpiredTokenError as exc:
            raise TokenExpired() from exc
        except (JoseError, ValueError) as exc:
            logger.info("Rejected %s token: %s", profile.provider.value, exc)
            raise InvalidToken() from exc

        try:
            claims = profile.normalize(payload)
        except (KeyError, ValidationError) as exc:
            logger.info("Rejected %s token with malformed claims: %s", profile.provider.value, exc)
            raise InvalidToken() from exc
        logger.info("Verified %s token for account %s", profile.provider.value, claims.provider_id)
        return claims

    async def authenticate(self, authorization: Optional[str]) -> IdentityClaims:
        return await self.verify(extract_bearer_token(authorization))
