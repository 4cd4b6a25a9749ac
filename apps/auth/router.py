import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from apps.auth.deps import get_claims, get_resolver, get_subscription_service
from apps.auth.errors import UserNotFound
from apps.auth.identity import IdentityClaims
from apps.auth.models import User
from apps.auth.services import AccountResolver
from apps.auth.status import project_status, public_user_with_status
from apps.auth.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


class CheckoutRequest(BaseModel):
    lookup_key: Optional[str] = None
    referral_code: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


def _existing_user(resolver: AccountResolver, claims: IdentityClaims) -> User:
    user = resolver.find(claims)
    if user is None:
        logger.info("No user row for %s account %s", claims.provider.value, claims.provider_id)
        raise UserNotFound()
    return user


@router.get("/auth-me")
def auth_me(
    claims: IdentityClaims = Depends(get_claims),
    resolver: AccountResolver = Depends(get_resolver),
):
    user = resolver.resolve(claims)
    return {"user": public_user_with_status(user)}


@router.get("/subscription-status")
def subscription_status(
    response: Response,
    claims: IdentityClaims = Depends(get_claims),
    resolver: AccountResolver = Depends(get_resolver),
):
    user = _existing_user(resolver, claims)
    flags = project_status(user)

    response.headers["Cache-Control"] = "private, max-age=60"
    response.headers["ETag"] = f'"{user.id}-{user.subscription_status or "none"}"'
    return {
        **user.to_public(),
        "hasActiveSubscription": flags.hasActiveSubscription,
        "needsPayment": flags.needsPayment,
        "isInGracePeriod": flags.isInGracePeriod,
    }


@router.post("/create-checkout-session")
def create_checkout_session(
    body: Optional[CheckoutRequest] = None,
    claims: IdentityClaims = Depends(get_claims),
    resolver: AccountResolver = Depends(get_resolver),
    service: SubscriptionService = Depends(get_subscription_service),
):
    body = body or CheckoutRequest()
    user = _existing_user(resolver, claims)
    url = service.create_checkout_session(
        user,
        lookup_key=body.lookup_key,
        referral_code=body.referral_code,
        metadata=body.metadata,
    )
    return {"url": url}


@router.post("/create-portal-session")
def create_portal_session(
    claims: IdentityClaims = Depends(get_claims),
    resolver: AccountResolver = Depends(get_resolver),
    service: SubscriptionService = Depends(get_subscription_service),
):
    user = _existing_user(resolver, claims)
    return {"url": service.create_portal_session(user)}
