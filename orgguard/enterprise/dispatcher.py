"""
Command dispatcher: the single entry point every organization command
passes through.

For each command the dispatcher, in order:

1. requires an authenticated caller,
2. rejects commands that do not exist in this deployment mode,
3. checks the payload type against the policy table,
4. parses the organization id, resolves the caller's role and loads
   the organization (any failure here is reported as "not found"),
5. runs the sensitive-operation guard when the policy demands it,
6. invokes the domain component and returns its result unchanged.

Usage:
    dispatcher = CommandDispatcher.from_settings(settings)
    view = await dispatcher.dispatch(
        Command.ADJUST_SEATS, auth, org_id, SeatRequest(seat_adjustment=5),
    )
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from orgguard.config.schema import Settings
from orgguard.enterprise.api_credentials import ApiCredentialManager
from orgguard.enterprise.billing import BillingOrchestrator
from orgguard.enterprise.commands import COMMAND_POLICIES, Command, CommandPolicy
from orgguard.enterprise.importer import BulkImportProcessor
from orgguard.enterprise.licensing import LicenseManager
from orgguard.enterprise.mode_gate import DeploymentModeGate
from orgguard.enterprise.models import (
    ApiKeyView,
    AuthContext,
    Organization,
    OrganizationView,
    User,
)
from orgguard.enterprise.organizations import OrganizationService
from orgguard.enterprise.roles import RoleResolver
from orgguard.enterprise.sensitive_guard import SensitiveOperationGuard
from orgguard.exceptions import (
    AuthenticationRequired,
    AuthorizationDenied,
    InvalidInputError,
    NotFoundError,
    OrgGuardError,
    SensitiveCheckFailed,
)
from orgguard.integrations.credentials import (
    BcryptCredentialVerifier,
    CredentialVerifier,
)
from orgguard.integrations.license_signer import Ed25519LicenseSigner, LicenseSigner
from orgguard.integrations.payment_gateway import PaymentGateway, create_payment_gateway
from orgguard.integrations.storage import Storage
from orgguard.integrations.supabase_store import create_storage
from orgguard.observability.logging_config import clear_request_id, set_request_id

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    UNAUTHORIZED = "unauthorized"
    MODE_REJECTED = "mode_rejected"
    GUARD_PENDING = "guard_pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CommandContext:
    """Everything a handler may need for one dispatch."""

    command: Command
    auth: AuthContext
    payload: Optional[BaseModel] = None
    org: Optional[Organization] = None
    user: Optional[User] = None


Handler = Callable[[CommandContext], Awaitable[Any]]


def _parse_org_id(org_id: Optional[str]) -> str:
    if not org_id:
        raise NotFoundError()
    try:
        return str(uuid.UUID(str(org_id)))
    except ValueError as e:
        raise NotFoundError() from e


class CommandDispatcher:
    """Applies the command policy table and routes to domain components."""

    def __init__(
        self,
        storage: Storage,
        gate: DeploymentModeGate,
        roles: RoleResolver,
        guard: SensitiveOperationGuard,
        billing: BillingOrchestrator,
        licenses: LicenseManager,
        importer: BulkImportProcessor,
        api_credentials: ApiCredentialManager,
        organizations: OrganizationService,
    ):
        self.storage = storage
        self.gate = gate
        self.roles = roles
        self.guard = guard
        self.billing = billing
        self.licenses = licenses
        self.importer = importer
        self.api_credentials = api_credentials
        self.organizations = organizations

        self._handlers: dict[Command, Handler] = {
            Command.READ_ORGANIZATION: self._read_organization,
            Command.READ_BILLING: lambda ctx: self.billing.get_billing(ctx.org),
            Command.READ_SUBSCRIPTION: lambda ctx: self.billing.get_subscription(ctx.org),
            Command.READ_LICENSE: lambda ctx: self.licenses.generate(
                ctx.org, ctx.payload.installation_id,
            ),
            Command.UPDATE_LICENSE: self._update_license,
            Command.LIST_MY_ORGANIZATIONS: lambda ctx: self.organizations.list_for_user(
                ctx.auth.user_id,
            ),
            Command.CREATE_ORGANIZATION: self._create_organization,
            Command.CREATE_ORGANIZATION_FROM_LICENSE: self._create_from_license,
            Command.UPDATE_ORGANIZATION: self._update_organization,
            Command.REPLACE_PAYMENT: lambda ctx: self.billing.replace_payment_method(
                ctx.org,
                ctx.payload.payment_token,
                ctx.payload.payment_method_type,
                ctx.payload.tax_info,
            ),
            Command.UPGRADE_PLAN: lambda ctx: self.billing.upgrade_plan(ctx.org, ctx.payload),
            Command.ADJUST_SEATS: lambda ctx: self.billing.adjust_seats(
                ctx.org, ctx.payload.seat_adjustment,
            ),
            Command.ADJUST_STORAGE: lambda ctx: self.billing.adjust_storage(
                ctx.org, ctx.payload.storage_gb_adjustment,
            ),
            Command.VERIFY_BANK: lambda ctx: self.billing.verify_bank_account(
                ctx.org, ctx.payload.amount1, ctx.payload.amount2,
            ),
            Command.CANCEL_SUBSCRIPTION: lambda ctx: self.billing.cancel_subscription(ctx.org),
            Command.REINSTATE_SUBSCRIPTION: lambda ctx: self.billing.reinstate_subscription(
                ctx.org,
            ),
            Command.LEAVE_ORGANIZATION: lambda ctx: self.organizations.leave(
                ctx.org, ctx.auth.user_id,
            ),
            Command.DELETE_ORGANIZATION: lambda ctx: self.organizations.delete(ctx.org),
            Command.IMPORT_MEMBERS: lambda ctx: self.importer.import_batch(
                ctx.org, ctx.payload,
            ),
            Command.GET_API_KEY: self._get_api_key,
            Command.ROTATE_API_KEY: self._rotate_api_key,
            Command.GET_TAX_INFO: lambda ctx: self.billing.get_tax_info(ctx.org),
            Command.SAVE_TAX_INFO: lambda ctx: self.billing.save_tax_info(ctx.org, ctx.payload),
            Command.GET_ORGANIZATION_KEYS: lambda ctx: self.organizations.get_keys(ctx.org),
            Command.SET_ORGANIZATION_KEYS: lambda ctx: self.organizations.set_keys(
                ctx.org, ctx.payload,
            ),
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        storage: Optional[Storage] = None,
        gateway: Optional[PaymentGateway] = None,
        signer: Optional[LicenseSigner] = None,
        verifier: Optional[CredentialVerifier] = None,
    ) -> CommandDispatcher:
        """Wire every component from settings, with optional overrides."""
        storage = storage or create_storage(settings.storage.backend)
        gateway = gateway or create_payment_gateway(settings)
        signer = signer or _signer_from_settings(settings)
        verifier = verifier or BcryptCredentialVerifier()
        gate = DeploymentModeGate(settings.mode)

        return cls(
            storage=storage,
            gate=gate,
            roles=RoleResolver(storage),
            guard=SensitiveOperationGuard(
                verifier, settings.guard.failure_delay_seconds,
            ),
            billing=BillingOrchestrator(storage, gateway, gate),
            licenses=LicenseManager(
                storage, signer, gate, settings.licensing, gateway,
            ),
            importer=BulkImportProcessor(storage, gate, settings.imports),
            api_credentials=ApiCredentialManager(storage, settings.api_key_length),
            organizations=OrganizationService(storage, gateway, gate),
        )

    # ── Dispatch ─────────────────────────────────────────────

    async def dispatch(
        self,
        command: Command,
        auth: Optional[AuthContext],
        org_id: Optional[str] = None,
        payload: Optional[BaseModel] = None,
    ) -> Any:
        """Run one command through the policy checks and its handler."""
        command = Command(command)
        policy = COMMAND_POLICIES[command]
        token = set_request_id(uuid.uuid4().hex[:12])
        started = time.monotonic()
        # `stage` names the state a failure at this point is reported as.
        stage = DispatchState.UNAUTHENTICATED
        ctx: Optional[CommandContext] = None

        try:
            if auth is None or not auth.user_id:
                raise AuthenticationRequired("Authentication required.")

            stage = DispatchState.MODE_REJECTED
            self.gate.require(policy.availability, command.value)

            stage = DispatchState.FAILED
            self._check_payload(policy, payload)
            ctx = CommandContext(command=command, auth=auth, payload=payload)

            if policy.org_scoped:
                stage = DispatchState.UNAUTHORIZED
                ctx.org = await self._authorize(policy, auth, org_id)

            if policy.sensitive:
                stage = DispatchState.GUARD_PENDING
                ctx.user = await self._require_user(auth)
                if not await self.guard.verify(
                    ctx.user, getattr(payload, "master_password_hash", None),
                ):
                    raise SensitiveCheckFailed()

            stage = DispatchState.EXECUTING
            result = await self._handlers[command](ctx)
            stage = DispatchState.COMPLETED
            return result

        except Exception as e:
            log = logger.warning if isinstance(e, OrgGuardError) else logger.error
            log(
                "command_failed",
                extra={
                    "command": command.value,
                    "org_id": ctx.org.id if ctx and ctx.org else org_id,
                    "user_id": auth.user_id if auth else None,
                    "state": DispatchState.FAILED.value,
                    "stage": stage.value,
                    "reason": type(e).__name__,
                    "duration_ms": round((time.monotonic() - started) * 1000, 1),
                },
            )
            raise

        finally:
            if stage == DispatchState.COMPLETED:
                logger.info(
                    "command_completed",
                    extra={
                        "command": command.value,
                        "org_id": ctx.org.id if ctx and ctx.org else None,
                        "user_id": auth.user_id if auth else None,
                        "state": stage.value,
                        "duration_ms": round((time.monotonic() - started) * 1000, 1),
                    },
                )
            clear_request_id(token)

    # ── Checks ───────────────────────────────────────────────

    @staticmethod
    def _check_payload(policy: CommandPolicy, payload: Optional[BaseModel]) -> None:
        if policy.payload is None:
            if payload is not None:
                raise InvalidInputError("This command takes no payload.", field="payload")
            return
        if not isinstance(payload, policy.payload):
            raise InvalidInputError(
                f"Expected a {policy.payload.__name__} payload.", field="payload",
            )

    async def _authorize(
        self, policy: CommandPolicy, auth: AuthContext, org_id: Optional[str],
    ) -> Organization:
        org_id = _parse_org_id(org_id)
        role = await self.roles.resolve(auth.user_id, org_id)
        if role is None or not role.has_at_least(policy.min_role):
            raise AuthorizationDenied()
        org = await self.storage.get_organization(org_id)
        if org is None:
            raise NotFoundError()
        return org

    async def _require_user(self, auth: AuthContext) -> User:
        user = await self.storage.get_user(auth.user_id)
        if user is None:
            raise AuthenticationRequired("Authentication required.")
        return user

    # ── Handlers ─────────────────────────────────────────────

    async def _read_organization(self, ctx: CommandContext) -> OrganizationView:
        return OrganizationView.from_org(ctx.org)

    async def _update_license(self, ctx: CommandContext) -> OrganizationView:
        org = await self.licenses.update(ctx.org, ctx.payload.license)
        return OrganizationView.from_org(org)

    async def _create_organization(self, ctx: CommandContext) -> OrganizationView:
        owner = await self._require_user(ctx.auth)
        org = await self.organizations.create(owner, ctx.payload)
        return OrganizationView.from_org(org)

    async def _create_from_license(self, ctx: CommandContext) -> OrganizationView:
        owner = await self._require_user(ctx.auth)
        payload = ctx.payload
        org = await self.licenses.apply(
            owner,
            payload.license,
            payload.key,
            collection_name=payload.collection_name,
            public_key=payload.public_key,
            encrypted_private_key=payload.encrypted_private_key,
        )
        return OrganizationView.from_org(org)

    async def _update_organization(self, ctx: CommandContext) -> OrganizationView:
        org = await self.organizations.update(ctx.org, ctx.payload)
        return OrganizationView.from_org(org)

    async def _get_api_key(self, ctx: CommandContext) -> ApiKeyView:
        return ApiKeyView(api_key=await self.api_credentials.issue_or_return(ctx.org))

    async def _rotate_api_key(self, ctx: CommandContext) -> ApiKeyView:
        return ApiKeyView(api_key=await self.api_credentials.rotate(ctx.org))


def _signer_from_settings(settings: Settings) -> LicenseSigner:
    licensing = settings.licensing
    if licensing.verify_key_path:
        return Ed25519LicenseSigner.from_files(
            licensing.verify_key_path, licensing.signing_key_path,
        )
    logger.warning("license_signer_ephemeral_key", extra={"mode": settings.mode.value})
    return Ed25519LicenseSigner.generate()
