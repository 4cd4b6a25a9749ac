from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from apps.auth.deps import get_gateway, get_state_machine
from apps.auth.payments import StripeGateway
from apps.auth.subscription_service import SubscriptionStateMachine

router = APIRouter(tags=["webhook"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    gateway: StripeGateway = Depends(get_gateway),
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    # Signature is checked against the exact bytes received
    payload = await request.body()
    event = gateway.verify_event(payload, stripe_signature)
    outcome = await run_in_threadpool(machine.apply, event)
    return {"received": True, "outcome": outcome.value}
