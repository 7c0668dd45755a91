import logging

from fastapi import APIRouter, Request

from subscription_ledger.models.webhook import WebhookResult
from .auth import Ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}", response_model=WebhookResult)
async def receive_webhook(provider: str, request: Request, ledger: Ledger):
    """
    Provider callback. The body is read raw: the signature is computed over the
    exact bytes, so nothing may parse it first.

    200 once the event is durably recorded (new or replayed), 400 on a bad
    signature, anything else is a 4xx/5xx the provider will retry.
    """
    raw_body = await request.body()
    return await ledger.webhooks.process(provider, dict(request.headers), raw_body)
