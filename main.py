#main.py
import logging

from fastapi import FastAPI

from app.escrow.errors import EscrowError
from middleware import RequestContextMiddleware
from routes.admin import router as admin_router
from routes.fees import router as fees_router
from routes.health import router as health_router
from routes.invites import router as invites_router
from routes.notifications import router as notifications_router
from routes.payout_accounts import router as payout_accounts_router
from routes.profile import router as profile_router
from routes.transactions import router as transactions_router
from services.http_errors import escrow_error_handler, unhandled_error_handler
from settings import settings


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Escrow API", version="1.0.0")

    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(fees_router)
    app.include_router(transactions_router)
    app.include_router(invites_router)
    app.include_router(notifications_router)
    app.include_router(payout_accounts_router)
    app.include_router(profile_router)
    app.include_router(admin_router)

    app.add_exception_handler(EscrowError, escrow_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    return app


app = create_app()
