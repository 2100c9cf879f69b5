"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .account import AssociatedTenant, Preferences


@dataclass(slots=True)
class CreateAccountInput:
    """Fields required by the account directory to create an account.

    ``password`` is the raw credential handed to the identity store for
    hashing; ``None`` means the credential is established later through a
    set-password flow.
    """

    email: str
    roles: list[str]
    tenant_ids: list[str]
    status: str = "active"
    is_verified: bool = False
    is_2fa_enabled: bool = False
    password: str | None = None


@dataclass(slots=True)
class ProfileUpdate:
    """Partial profile update; ``None`` fields are left untouched."""

    display_name: str | None = None
    associated_tenants: list[AssociatedTenant] | None = None
    preferences: Preferences | None = None


@dataclass(slots=True)
class RoleAssignmentInput:
    user_id: str
    role_id: str
    scope: str


@dataclass(slots=True)
class NewInvitation:
    """Validated invitation record handed to the invitation store for persistence."""

    email: str
    target_tenant_id: str
    target_role_id: str
    invited_by_user_id: str
    token: str
    expires_at: datetime


@dataclass(slots=True)
class CreateUserInput:
    """Administrator-supplied details for direct provisioning inside a scope."""

    email: str
    name: str
    initial_role: str


@dataclass(slots=True)
class ProvisionUserInput:
    """Self-registration details for the personal-scope flow."""

    email: str
    name: str
    password: str | None = None


@dataclass(slots=True)
class AcceptInviteInput:
    """Token presented by an invitee plus the details needed to open an account."""

    token: str
    password: str | None = None
    display_name: str | None = None
