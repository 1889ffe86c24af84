"""
Organization commands.

Role resolution, deployment-mode gating, the sensitive-operation guard
and the domain components (billing, licensing, directory import, API
credentials, organization lifecycle) behind a single dispatcher.
"""

from orgguard.enterprise.commands import COMMAND_POLICIES, Command, CommandPolicy
from orgguard.enterprise.dispatcher import CommandDispatcher, DispatchState
from orgguard.enterprise.models import (
    AuthContext,
    Membership,
    MembershipStatus,
    Organization,
    OrgRole,
    PlanLimits,
    PlanTier,
    PLAN_TIER_LIMITS,
)

__all__ = [
    "AuthContext",
    "Command",
    "CommandDispatcher",
    "CommandPolicy",
    "COMMAND_POLICIES",
    "DispatchState",
    "Membership",
    "MembershipStatus",
    "Organization",
    "OrgRole",
    "PlanLimits",
    "PlanTier",
    "PLAN_TIER_LIMITS",
]
