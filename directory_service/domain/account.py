from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

SUPERUSER_ROLE = "superuser"
DEFAULT_SYSTEM_ROLE = "user"


@dataclass(slots=True)
class Account:
    """Identity record owned by the account directory."""

    account_id: str
    email: str
    roles: list[str]
    tenant_ids: list[str]
    created_at: datetime
    status: str = "active"
    is_verified: bool = False
    is_2fa_enabled: bool = False

    @property
    def is_superuser(self) -> bool:
        return SUPERUSER_ROLE in self.roles

    def shares_tenant_with(self, tenant_ids: list[str]) -> bool:
        """Return ``True`` when any of ``tenant_ids`` is also one of this account's tenants."""
        return not set(self.tenant_ids).isdisjoint(tenant_ids)


@dataclass(slots=True)
class AssociatedTenant:
    tenant_id: str
    display_name: str
    status: str = "active"


@dataclass(slots=True)
class Preferences:
    theme: str = "system"
    notifications: bool = True
    current_tenant_id: str | None = None


@dataclass(slots=True)
class Profile:
    """Presentation data attached one-to-one to an account."""

    account_id: str
    display_name: str
    associated_tenants: list[AssociatedTenant] = field(default_factory=list)
    preferences: Preferences = field(default_factory=Preferences)


@dataclass(slots=True, frozen=True)
class RoleAssignment:
    """Grant of ``role_id`` to ``user_id`` inside the tenant ``scope``."""

    user_id: str
    role_id: str
    scope: str


@dataclass(slots=True)
class UserComposite:
    """Read model combining an account with its profile and role assignments."""

    account: Account
    profile: Profile
    assignments: list[RoleAssignment]
