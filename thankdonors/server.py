from __future__ import annotations
import argparse
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

import orjson
import stripe
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from pydantic import ValidationError

from . import account, balance, billing, checkout, intake, notify
from . import provisioning, subscriptions
from .authn import AuthUser, basic_credentials, bearer_token
from .config import Settings
from .errors import ApiError, BadRequest, Unauthorized
from .infra.sql import GatedAsyncSession
from .infra.timings import install_shutdown_flush, timeit
from .services import Services, build_services

logger = logging.getLogger(__name__)

SOURCE_NAME_HEADER = "x-hookdeck-source-name"


# ----------------------------
# Dependencies
# ----------------------------
def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("services not initialized")
    return services


async def get_db(
    services: Services = Depends(get_services),
) -> AsyncIterator[GatedAsyncSession]:
    async with services.db() as db:
        yield db


async def current_user(
    request: Request, services: Services = Depends(get_services),
) -> AuthUser:
    token = bearer_token(request.headers.get("authorization"))
    if token is None:
        raise Unauthorized("Missing Authorization header")
    return await services.auth.get_user(token)


def require_service(
    request: Request, services: Services = Depends(get_services),
) -> None:
    token = bearer_token(request.headers.get("authorization"))
    if not services.auth.is_service_token(token):
        raise Unauthorized("Unauthorized")


async def json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise BadRequest("Invalid JSON")
    if not isinstance(body, dict):
        raise BadRequest("Invalid JSON")
    return body


def origin_of(request: Request, services: Services) -> str:
    return (request.headers.get("origin")
            or services.settings.app_origin).rstrip("/")


router = APIRouter()


# ----------------------------
# Balance ledger
# ----------------------------
@router.post("/functions/manage-account-balance",
             dependencies=[Depends(require_service)])
async def manage_account_balance(
    payload: Dict[str, Any] = Depends(json_body),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await balance.manage_account_balance(
        db, services.gateway,
        payload.get("action"), payload.get("userId"), payload.get("amount"),
    )


# ----------------------------
# Webhook provisioning
# ----------------------------
@router.post("/functions/create-hookdeck-webhook")
async def create_hookdeck_webhook(
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await provisioning.provision_webhook(
        db, services.routing, user.id, user.email
    )


@router.post("/functions/delete-hookdeck-webhook")
async def delete_hookdeck_webhook(
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await provisioning.delete_webhook(db, services.routing, user.id)


@router.post("/functions/rotate-webhook-credentials")
async def rotate_webhook_credentials(
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await provisioning.rotate_webhook_password(
        db, services.routing, user.id, user.email
    )


@router.post("/functions/verify-webhook-auth",
             dependencies=[Depends(require_service)])
async def verify_webhook_auth(
    payload: Dict[str, Any] = Depends(json_body),
    db: GatedAsyncSession = Depends(get_db),
):
    profile_id = payload.get("profileId")
    password = payload.get("providedPassword")
    if not profile_id or not password:
        raise BadRequest("Missing required parameters")
    valid = await provisioning.verify_webhook_password(
        db, profile_id, password
    )
    if valid is None:
        raise ApiError("No webhook credentials found", status_code=404)
    return {"valid": valid}


# ----------------------------
# Donation intake
# ----------------------------
@router.post("/functions/handle-actblue-webhook")
async def handle_actblue_webhook(
    request: Request,
    profile_id: Optional[str] = None,
    payload: Dict[str, Any] = Depends(json_body),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    routed = request.headers.get(SOURCE_NAME_HEADER) or profile_id
    creds = basic_credentials(request.headers.get("authorization"))
    return await intake.handle_donation(
        db, services.queue, payload, routed,
        password=creds[1] if creds else None,
        notifier=services.notifier,
        auth=services.auth,
    )


# ----------------------------
# Usage billing
# ----------------------------
@router.post("/functions/create-usage-charge",
             dependencies=[Depends(require_service)])
async def create_usage_charge(
    payload: Dict[str, Any] = Depends(json_body),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    postcard_id = payload.get("postcardId")
    if not postcard_id:
        raise BadRequest("postcardId is required")
    return await billing.bill_postcard(db, services.gateway, postcard_id)


@router.post("/functions/process-monthly-usage-billing",
             dependencies=[Depends(require_service)])
async def process_monthly_usage_billing(
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    async with timeit("billing.monthly"):
        return await billing.run_monthly_billing(db, services.gateway)


# ----------------------------
# Processor webhook
# ----------------------------
@router.post("/functions/handle-stripe-webhook")
async def handle_stripe_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    payload = await request.body()
    return await subscriptions.handle_stripe_event(
        db, services.gateway, payload, request.headers.get("stripe-signature")
    )


# ----------------------------
# Checkout & portal
# ----------------------------
@router.post("/functions/create-checkout-session")
async def create_checkout_session(
    request: Request,
    payload: Dict[str, Any] = Depends(json_body),
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await checkout.create_checkout_session(
        db, services.gateway, user,
        payload.get("planId"), payload.get("cancelUrl"),
        origin_of(request, services),
    )


@router.post("/functions/customer-portal")
async def customer_portal(
    request: Request,
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await checkout.create_portal_session(
        db, services.gateway, user, origin_of(request, services)
    )


@router.post("/functions/process-balance-payment")
async def process_balance_payment(
    payload: Dict[str, Any] = Depends(json_body),
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await checkout.confirm_checkout_payment(
        db, services.gateway, payload.get("sessionId")
    )


# ----------------------------
# Notifications
# ----------------------------
@router.post("/functions/send-loops-notification",
             dependencies=[Depends(require_service)])
async def send_loops_notification(
    payload: Dict[str, Any] = Depends(json_body),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    if services.notifier is None:
        raise ApiError("LOOPS_API_KEY is not configured")
    if not payload.get("profileId"):
        raise BadRequest("profileId is required")
    return await notify.dispatch(
        db, services.notifier, payload.get("action"), payload["profileId"],
        payload.get("data") or {}, auth=services.auth,
    )


# ----------------------------
# Account
# ----------------------------
@router.get("/api/profile")
async def get_profile(
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    return await account.get_profile(db, user)


@router.patch("/api/profile")
async def patch_profile(
    payload: Dict[str, Any] = Depends(json_body),
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    try:
        changes = account.ProfileUpdate.model_validate(payload)
    except ValidationError:
        raise BadRequest("Invalid profile fields")
    return await account.update_profile(db, user, changes)


@router.get("/api/donations")
async def get_donations(
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    return await account.list_donations(db, user)


@router.post("/api/postcards/{postcard_id}/tracking-events",
             dependencies=[Depends(require_service)])
async def post_tracking_event(
    postcard_id: str,
    payload: Dict[str, Any] = Depends(json_body),
    db: GatedAsyncSession = Depends(get_db),
):
    try:
        update = account.TrackingUpdate.model_validate(payload)
    except ValidationError:
        raise BadRequest("status is required")
    return await account.add_tracking_event(db, postcard_id, update)


@router.post("/functions/delete-account")
async def delete_account(
    user: AuthUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    return await account.delete_account(
        db, services.routing, services.auth, user
    )


# ----------------------------
# Errors
# ----------------------------
async def _api_error(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path,
                     exc.error)
    return ORJSONResponse(exc.body(), status_code=exc.status_code)


async def _stripe_error(request: Request, exc: stripe.StripeError):
    logger.error("%s %s: Stripe error: %s", request.method,
                 request.url.path, exc)
    message = exc.user_message or str(exc) or "Payment processor error"
    return ORJSONResponse({"error": message}, status_code=500)


# ----------------------------
# App
# ----------------------------
def create_app(settings: Optional[Settings] = None,
               services: Optional[Services] = None) -> FastAPI:
    """
    With `services` given (tests), nothing is built at startup and no
    background worker runs.
    """
    if settings is None:
        settings = services.settings if services else Settings.from_env()

    app = FastAPI(
        title="Thank Donors",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.services = services
    app.state.worker_task = None

    app.add_exception_handler(ApiError, _api_error)
    app.add_exception_handler(stripe.StripeError, _stripe_error)
    app.include_router(router)

    # log call timings on shutdown
    install_shutdown_flush(app)

    owns_services = services is None

    @app.on_event("startup")
    async def _say_hello():
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        Q = ('PostgreSQL' if settings.monitor_queue_backend == 'pg'
             else 'Redis')
        logger.info("=" * 50)
        logger.info("Thank Donors is starting up...")
        logger.info("   - Monitor Queue Backend: %s", Q)
        logger.info("   - In-process monitor worker: %s",
                    "on" if settings.monitor_in_process else "off")
        logger.info("=" * 50)

    @app.on_event("startup")
    async def _services_start():
        if owns_services:
            app.state.services = await build_services(settings)

    @app.on_event("startup")
    async def _worker_start():
        if owns_services and settings.monitor_in_process:
            worker = app.state.services.worker()
            app.state.worker_task = asyncio.create_task(worker.run_forever())

    @app.on_event("shutdown")
    async def _worker_stop():
        task = app.state.worker_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.worker_task = None

    @app.on_event("shutdown")
    async def _services_stop():
        if owns_services and app.state.services is not None:
            await app.state.services.aclose()
            app.state.services = None

    return app


def main(argv=None) -> None:
    """thankdonors-server: serve the API with uvicorn."""
    ap = argparse.ArgumentParser(prog="thankdonors-server")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8000)
    args = ap.parse_args(argv)

    config = uvicorn.Config(create_app(), host=args.host, port=args.port,
                            log_level="info")
    uvicorn.Server(config).run()
