from typing import Optional

from fastapi import Depends, Header, Request

from apps.auth.identity import IdentityClaims, IdentityVerifier
from apps.auth.payments import StripeGateway
from apps.auth.services import AccountResolver
from apps.auth.subscription_service import SubscriptionService, SubscriptionStateMachine
from config import Settings
from database import Database


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_verifier(request: Request) -> IdentityVerifier:
    return request.app.state.verifier


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway


async def get_claims(
    authorization: Optional[str] = Header(None),
    verifier: IdentityVerifier = Depends(get_verifier),
) -> IdentityClaims:
    return await verifier.authenticate(authorization)


def get_resolver(
    db: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> AccountResolver:
    return AccountResolver(db, admin_group_id=settings.ADMIN_GROUP_ID, admin_emails=settings.admin_emails)


def get_subscription_service(
    gateway: StripeGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> SubscriptionService:
    return SubscriptionService(gateway, settings)


def get_state_machine(
    db: Database = Depends(get_database),
    gateway: StripeGateway = Depends(get_gateway),
) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(db, gateway)
