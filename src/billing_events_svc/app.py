import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_events_svc.config import get_settings
from billing_events_svc.errors import BillingError
from billing_events_svc.models.base import init_db
from billing_events_svc.routers import billing_router

logging.basicConfig(level=get_settings().log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Billing Events Service", lifespan=lifespan)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.retryable:
        logging.error(f"{request.method} {request.url.path} failed, asking for redelivery: {exc.message} {exc.details}")
    else:
        logging.warning(f"{request.method} {request.url.path} rejected: {exc.message} {exc.details}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Billing routes live under '/api/billing'
app.include_router(billing_router.router, prefix="/api/billing")
