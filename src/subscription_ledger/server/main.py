import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from subscription_ledger import create_ledger_client
from subscription_ledger.client import LedgerClient
from subscription_ledger.exceptions import (
    ConflictError, InvalidPayloadError, InvalidSignatureError, InvalidTransitionError, LedgerError,
    NotFoundError, ProviderError, TransientProviderError,
)
from .subscriptions import router as subscriptions_router
from .webhooks import router as webhooks_router

logger = logging.getLogger(__name__)

# Most specific first: the first isinstance match wins.
_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (InvalidSignatureError, status.HTTP_400_BAD_REQUEST),
    (InvalidPayloadError, status.HTTP_400_BAD_REQUEST),
    (TransientProviderError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
)


def status_for(exc: LedgerError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}", extra={"details": exc.details})
        body = {"error": exc.code, "message": "Internal error, please retry later.", "details": {}}
        if code in (status.HTTP_502_BAD_GATEWAY, status.HTTP_503_SERVICE_UNAVAILABLE):
            body["message"] = exc.message
        return JSONResponse(status_code=code, content=body)
    return JSONResponse(status_code=code, content=exc.to_dict())


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "VALIDATION_ERROR", "message": str(exc), "details": {}},
    )


def create_app(ledger: Optional[LedgerClient] = None) -> FastAPI:
    """
    HTTP surface: webhooks plus the user-facing subscription routes.
    Without an explicit client one is built from the environment and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = ledger is None
        app.state.ledger = ledger or create_ledger_client()
        try:
            yield
        finally:
            if owned:
                await app.state.ledger.aclose()

    app = FastAPI(title="subscription-ledger", lifespan=lifespan)
    if ledger is not None:
        app.state.ledger = ledger
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.include_router(webhooks_router)
    app.include_router(subscriptions_router)
    return app
