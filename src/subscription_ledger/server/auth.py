from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request

from subscription_ledger.client import LedgerClient


def get_ledger(request: Request) -> LedgerClient:
    return request.app.state.ledger


async def get_current_user_id(x_user_id: Annotated[UUID, Header(alias="X-User-Id")]) -> UUID:
    """
    Caller identity. Authentication lives in front of this service; override
    this dependency (app.dependency_overrides) to plug a real one in.
    """
    return x_user_id


Ledger = Annotated[LedgerClient, Depends(get_ledger)]
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
