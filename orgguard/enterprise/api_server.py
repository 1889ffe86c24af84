"""
Organization API server.

FastAPI application exposing the command surface over HTTP. Every route
parses its body into the command's payload model and hands it to
CommandDispatcher.dispatch; no route makes an authorization decision of
its own.

Caller identity is resolved by an `authenticate(request)` callable.
The default trusts X-User-Id / X-User-Email headers set by an upstream
authentication proxy.

Usage:
    from orgguard.enterprise.api_server import create_api_app

    app = create_api_app(dispatcher)
    uvicorn.run(app, host="0.0.0.0", port=8000)

Endpoints (all under /organizations unless noted):
    GET    /api/health                     Health check (no auth)
    GET    /organizations                  Organizations I belong to
    POST   /organizations                  Create (hosted)
    POST   /organizations/license          Create from license (self-hosted)
    GET    /{id}                           Read organization
    PUT    /{id}                           Update organization
    GET    /{id}/billing                   Billing info (hosted)
    GET    /{id}/subscription              Subscription
    GET    /{id}/license                   Generate license (hosted)
    POST   /{id}/license                   Update license (self-hosted)
    POST   /{id}/payment | upgrade | seat | storage | verify-bank
    POST   /{id}/cancel | reinstate | leave
    POST   /{id}/delete, DELETE /{id}      Delete (credential required)
    POST   /{id}/import                    Directory import
    POST   /{id}/api-key | rotate-api-key  API key (credential required)
    GET    /{id}/tax, PUT /{id}/tax        Tax info (hosted)
    GET    /{id}/keys, POST /{id}/keys     Organization key pair
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orgguard.enterprise.commands import Command
from orgguard.enterprise.dispatcher import CommandDispatcher
from orgguard.enterprise.models import AuthContext, ImportBatch, TaxInfo
from orgguard.enterprise.requests import (
    LicenseRequest,
    LicenseUpdateRequest,
    OrganizationCreateRequest,
    OrganizationKeysRequest,
    OrganizationLicenseCreateRequest,
    OrganizationUpdateRequest,
    PaymentRequest,
    SeatRequest,
    SecretVerificationRequest,
    StorageRequest,
    UpgradeRequest,
    VerifyBankRequest,
)
from orgguard.exceptions import (
    NOT_FOUND_MESSAGE,
    AuthenticationRequired,
    BillingError,
    ConflictError,
    GatewayError,
    InvalidInputError,
    InvalidLicense,
    InvariantViolation,
    ModeNotSupported,
    NotFoundError,
    OrgGuardError,
    StorageUnavailable,
)

logger = logging.getLogger(__name__)

Authenticator = Callable[[Request], Awaitable[Optional[AuthContext]]]


# ── Response Envelope ────────────────────────────────────────


class APIResponse(BaseModel):
    """Standard API response envelope."""
    ok: bool = True
    data: Any = None
    error: Optional[dict[str, Any]] = None
    meta: dict[str, Any] = Field(default_factory=dict)


# ── Error Mapping ────────────────────────────────────────────


_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (NotFoundError, 404),
    (ModeNotSupported, 404),
    (AuthenticationRequired, 401),
    (ConflictError, 409),
    (StorageUnavailable, 503),
    (InvalidInputError, 400),
    (BillingError, 400),
    (InvalidLicense, 400),
    (InvariantViolation, 400),
    (GatewayError, 400),
)


def status_for(exc: Exception) -> int:
    """HTTP status for a domain error; 500 for anything unrecognized."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_body(exc: Exception) -> dict[str, Any]:
    status = status_for(exc)
    if isinstance(exc, NotFoundError):
        # AuthorizationDenied must be indistinguishable from NotFound
        return {"type": "not_found", "message": NOT_FOUND_MESSAGE}
    if isinstance(exc, ModeNotSupported):
        return {"type": "not_supported", "message": exc.message}
    if status == 500:
        return {"type": "internal_error", "message": "Internal server error"}
    if isinstance(exc, StorageUnavailable):
        return {"type": "unavailable", "message": "Service temporarily unavailable"}

    body: dict[str, Any] = {"type": "bad_request", "message": exc.message}
    if isinstance(exc, InvalidInputError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, GatewayError) and exc.code:
        body["code"] = exc.code
    if isinstance(exc, AuthenticationRequired):
        body["type"] = "unauthorized"
    if isinstance(exc, ConflictError):
        body["type"] = "conflict"
    return body


def _error_response(exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content=APIResponse(ok=False, error=error_body(exc)).model_dump(),
    )


# ── Authentication ───────────────────────────────────────────


async def header_identity(request: Request) -> Optional[AuthContext]:
    """Identity asserted by an upstream authentication proxy."""
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        return None
    return AuthContext(
        user_id=user_id,
        email=request.headers.get("X-User-Email", ""),
    )


# ── App Factory ──────────────────────────────────────────────


def create_api_app(
    dispatcher: CommandDispatcher,
    authenticate: Authenticator = header_identity,
    cors_origins: Optional[list[str]] = None,
) -> FastAPI:
    """
    Create the FastAPI application with all organization routes.

    Args:
        dispatcher: Fully wired CommandDispatcher.
        authenticate: Resolves the caller from the request (None = anonymous).
        cors_origins: Allowed CORS origins (default: none).

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="orgguard",
        description="Organization command API.",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(OrgGuardError)
    async def handle_domain_error(request: Request, exc: OrgGuardError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = ".".join(str(p) for p in errors[0]["loc"][1:]) if errors else None
        return JSONResponse(
            status_code=400,
            content=APIResponse(
                ok=False,
                error={"type": "bad_request", "message": "Invalid request.", "field": field},
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.error(
            "api_unhandled_error",
            extra={"path": request.url.path, "reason": type(exc).__name__},
        )
        return _error_response(exc)

    async def run(
        command: Command,
        request: Request,
        org_id: Optional[str] = None,
        payload: Optional[BaseModel] = None,
    ) -> APIResponse:
        auth = await authenticate(request)
        result = await dispatcher.dispatch(command, auth, org_id, payload)
        return APIResponse(data=result, meta={"mode": dispatcher.gate.mode.value})

    # ── Health ───────────────────────────────────────────

    @app.get("/api/health", tags=["Health"])
    async def health_check():
        """Health check endpoint (no authentication required)."""
        return {
            "status": "healthy",
            "service": "orgguard",
            "mode": dispatcher.gate.mode.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ── Collection ───────────────────────────────────────

    @app.get("/organizations", tags=["Organizations"])
    async def list_my_organizations(request: Request):
        return await run(Command.LIST_MY_ORGANIZATIONS, request)

    @app.post("/organizations", tags=["Organizations"])
    async def create_organization(request: Request, body: OrganizationCreateRequest):
        return await run(Command.CREATE_ORGANIZATION, request, payload=body)

    @app.post("/organizations/license", tags=["Licensing"])
    async def create_organization_from_license(
        request: Request, body: OrganizationLicenseCreateRequest,
    ):
        return await run(Command.CREATE_ORGANIZATION_FROM_LICENSE, request, payload=body)

    # ── Organization ─────────────────────────────────────

    @app.get("/organizations/{org_id}", tags=["Organizations"])
    async def read_organization(org_id: str, request: Request):
        return await run(Command.READ_ORGANIZATION, request, org_id)

    @app.put("/organizations/{org_id}", tags=["Organizations"])
    async def update_organization(
        org_id: str, request: Request, body: OrganizationUpdateRequest,
    ):
        return await run(Command.UPDATE_ORGANIZATION, request, org_id, body)

    @app.post("/organizations/{org_id}/leave", tags=["Organizations"])
    async def leave_organization(org_id: str, request: Request):
        return await run(Command.LEAVE_ORGANIZATION, request, org_id)

    @app.post("/organizations/{org_id}/delete", tags=["Organizations"])
    @app.delete("/organizations/{org_id}", tags=["Organizations"])
    async def delete_organization(
        org_id: str, request: Request, body: SecretVerificationRequest,
    ):
        return await run(Command.DELETE_ORGANIZATION, request, org_id, body)

    @app.post("/organizations/{org_id}/import", tags=["Organizations"])
    async def import_members(org_id: str, request: Request, body: ImportBatch):
        return await run(Command.IMPORT_MEMBERS, request, org_id, body)

    # ── Billing ──────────────────────────────────────────

    @app.get("/organizations/{org_id}/billing", tags=["Billing"])
    async def read_billing(org_id: str, request: Request):
        return await run(Command.READ_BILLING, request, org_id)

    @app.get("/organizations/{org_id}/subscription", tags=["Billing"])
    async def read_subscription(org_id: str, request: Request):
        return await run(Command.READ_SUBSCRIPTION, request, org_id)

    @app.post("/organizations/{org_id}/payment", tags=["Billing"])
    async def replace_payment(org_id: str, request: Request, body: PaymentRequest):
        return await run(Command.REPLACE_PAYMENT, request, org_id, body)

    @app.post("/organizations/{org_id}/upgrade", tags=["Billing"])
    async def upgrade_plan(org_id: str, request: Request, body: UpgradeRequest):
        return await run(Command.UPGRADE_PLAN, request, org_id, body)

    @app.post("/organizations/{org_id}/seat", tags=["Billing"])
    async def adjust_seats(org_id: str, request: Request, body: SeatRequest):
        return await run(Command.ADJUST_SEATS, request, org_id, body)

    @app.post("/organizations/{org_id}/storage", tags=["Billing"])
    async def adjust_storage(org_id: str, request: Request, body: StorageRequest):
        return await run(Command.ADJUST_STORAGE, request, org_id, body)

    @app.post("/organizations/{org_id}/verify-bank", tags=["Billing"])
    async def verify_bank(org_id: str, request: Request, body: VerifyBankRequest):
        return await run(Command.VERIFY_BANK, request, org_id, body)

    @app.post("/organizations/{org_id}/cancel", tags=["Billing"])
    async def cancel_subscription(org_id: str, request: Request):
        return await run(Command.CANCEL_SUBSCRIPTION, request, org_id)

    @app.post("/organizations/{org_id}/reinstate", tags=["Billing"])
    async def reinstate_subscription(org_id: str, request: Request):
        return await run(Command.REINSTATE_SUBSCRIPTION, request, org_id)

    @app.get("/organizations/{org_id}/tax", tags=["Billing"])
    async def get_tax_info(org_id: str, request: Request):
        return await run(Command.GET_TAX_INFO, request, org_id)

    @app.put("/organizations/{org_id}/tax", tags=["Billing"])
    async def save_tax_info(org_id: str, request: Request, body: TaxInfo):
        return await run(Command.SAVE_TAX_INFO, request, org_id, body)

    # ── Licensing ────────────────────────────────────────

    @app.get("/organizations/{org_id}/license", tags=["Licensing"])
    async def read_license(
        org_id: str,
        request: Request,
        installation_id: str = Query(...),
    ):
        return await run(
            Command.READ_LICENSE, request, org_id,
            LicenseRequest(installation_id=installation_id),
        )

    @app.post("/organizations/{org_id}/license", tags=["Licensing"])
    async def update_license(org_id: str, request: Request, body: LicenseUpdateRequest):
        return await run(Command.UPDATE_LICENSE, request, org_id, body)

    # ── Secrets ──────────────────────────────────────────

    @app.post("/organizations/{org_id}/api-key", tags=["Secrets"])
    async def get_api_key(org_id: str, request: Request, body: SecretVerificationRequest):
        return await run(Command.GET_API_KEY, request, org_id, body)

    @app.post("/organizations/{org_id}/rotate-api-key", tags=["Secrets"])
    async def rotate_api_key(
        org_id: str, request: Request, body: SecretVerificationRequest,
    ):
        return await run(Command.ROTATE_API_KEY, request, org_id, body)

    @app.get("/organizations/{org_id}/keys", tags=["Secrets"])
    async def get_organization_keys(org_id: str, request: Request):
        return await run(Command.GET_ORGANIZATION_KEYS, request, org_id)

    @app.post("/organizations/{org_id}/keys", tags=["Secrets"])
    async def set_organization_keys(
        org_id: str, request: Request, body: OrganizationKeysRequest,
    ):
        return await run(Command.SET_ORGANIZATION_KEYS, request, org_id, body)

    logger.info(
        "api_app_created",
        extra={"mode": dispatcher.gate.mode.value, "routes": len(app.routes)},
    )
    return app
