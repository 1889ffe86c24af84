"""
Command policy table.

One row per command: the minimum role (None for commands that are not
scoped to an organization), the deployment modes in which the command
exists, whether the sensitive-operation guard must pass first, and the
payload model the command expects. The dispatcher consults this table
and nothing else to decide whether a command may run.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from orgguard.enterprise.mode_gate import Availability
from orgguard.enterprise.models import ImportBatch, OrgRole, TaxInfo
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


class Command(str, Enum):
    READ_ORGANIZATION = "read-organization"
    READ_BILLING = "read-billing"
    READ_SUBSCRIPTION = "read-subscription"
    READ_LICENSE = "read-license"
    UPDATE_LICENSE = "update-license"
    LIST_MY_ORGANIZATIONS = "list-my-organizations"
    CREATE_ORGANIZATION = "create-organization"
    CREATE_ORGANIZATION_FROM_LICENSE = "create-organization-from-license"
    UPDATE_ORGANIZATION = "update-organization"
    REPLACE_PAYMENT = "replace-payment"
    UPGRADE_PLAN = "upgrade-plan"
    ADJUST_SEATS = "adjust-seats"
    ADJUST_STORAGE = "adjust-storage"
    VERIFY_BANK = "verify-bank"
    CANCEL_SUBSCRIPTION = "cancel-subscription"
    REINSTATE_SUBSCRIPTION = "reinstate-subscription"
    LEAVE_ORGANIZATION = "leave-organization"
    DELETE_ORGANIZATION = "delete-organization"
    IMPORT_MEMBERS = "import-members"
    GET_API_KEY = "get-api-key"
    ROTATE_API_KEY = "rotate-api-key"
    GET_TAX_INFO = "get-tax-info"
    SAVE_TAX_INFO = "save-tax-info"
    GET_ORGANIZATION_KEYS = "get-organization-keys"
    SET_ORGANIZATION_KEYS = "set-organization-keys"


@dataclass(frozen=True)
class CommandPolicy:
    min_role: Optional[OrgRole]
    availability: Availability = Availability.ANY
    sensitive: bool = False
    payload: Optional[type[BaseModel]] = None

    @property
    def org_scoped(self) -> bool:
        return self.min_role is not None


_OWNER = OrgRole.OWNER
_ADMIN = OrgRole.ADMIN
_MEMBER = OrgRole.MEMBER
_HOSTED = Availability.HOSTED_ONLY
_SELF_HOSTED = Availability.SELF_HOSTED_ONLY


COMMAND_POLICIES: dict[Command, CommandPolicy] = {
    # Reads
    Command.READ_ORGANIZATION: CommandPolicy(_OWNER),
    Command.READ_BILLING: CommandPolicy(_OWNER, _HOSTED),
    Command.READ_SUBSCRIPTION: CommandPolicy(_OWNER),
    Command.LIST_MY_ORGANIZATIONS: CommandPolicy(None),

    # Licensing: hosted issues, self-hosted consumes
    Command.READ_LICENSE: CommandPolicy(_OWNER, _HOSTED, payload=LicenseRequest),
    Command.UPDATE_LICENSE: CommandPolicy(
        _OWNER, _SELF_HOSTED, payload=LicenseUpdateRequest,
    ),

    # Lifecycle
    Command.CREATE_ORGANIZATION: CommandPolicy(
        None, _HOSTED, payload=OrganizationCreateRequest,
    ),
    Command.CREATE_ORGANIZATION_FROM_LICENSE: CommandPolicy(
        None, _SELF_HOSTED, payload=OrganizationLicenseCreateRequest,
    ),
    Command.UPDATE_ORGANIZATION: CommandPolicy(
        _OWNER, payload=OrganizationUpdateRequest,
    ),
    Command.LEAVE_ORGANIZATION: CommandPolicy(_MEMBER),
    Command.DELETE_ORGANIZATION: CommandPolicy(
        _OWNER, sensitive=True, payload=SecretVerificationRequest,
    ),

    # Billing
    Command.REPLACE_PAYMENT: CommandPolicy(_OWNER, _HOSTED, payload=PaymentRequest),
    Command.UPGRADE_PLAN: CommandPolicy(_OWNER, _HOSTED, payload=UpgradeRequest),
    Command.ADJUST_SEATS: CommandPolicy(_OWNER, _HOSTED, payload=SeatRequest),
    Command.ADJUST_STORAGE: CommandPolicy(_OWNER, _HOSTED, payload=StorageRequest),
    Command.VERIFY_BANK: CommandPolicy(_OWNER, _HOSTED, payload=VerifyBankRequest),
    Command.CANCEL_SUBSCRIPTION: CommandPolicy(_OWNER, _HOSTED),
    Command.REINSTATE_SUBSCRIPTION: CommandPolicy(_OWNER, _HOSTED),
    Command.GET_TAX_INFO: CommandPolicy(_OWNER, _HOSTED),
    Command.SAVE_TAX_INFO: CommandPolicy(_OWNER, _HOSTED, payload=TaxInfo),

    # Directory sync
    Command.IMPORT_MEMBERS: CommandPolicy(_ADMIN, payload=ImportBatch),

    # Secrets
    Command.GET_API_KEY: CommandPolicy(
        _OWNER, sensitive=True, payload=SecretVerificationRequest,
    ),
    Command.ROTATE_API_KEY: CommandPolicy(
        _OWNER, sensitive=True, payload=SecretVerificationRequest,
    ),
    Command.GET_ORGANIZATION_KEYS: CommandPolicy(_MEMBER),
    Command.SET_ORGANIZATION_KEYS: CommandPolicy(
        _ADMIN, payload=OrganizationKeysRequest,
    ),
}


def get_policy(command: Command) -> CommandPolicy:
    return COMMAND_POLICIES[Command(command)]
