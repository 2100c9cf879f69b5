"""HTTP route definitions for the directory service."""

from __future__ import annotations

import logging

from datetime import datetime
from typing import Any

import jwt
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import get_settings
from ..domain.account import Account, UserComposite
from ..domain.contracts import AcceptInviteInput, CreateUserInput, ProvisionUserInput
from ..domain.errors import (
    AlreadyUsed,
    ConflictDuplicateInvite,
    ConflictExistingAccount,
    DirectoryError,
    Expired,
    Forbidden,
    InvalidInput,
    NotFound,
    Unauthenticated,
)
from ..domain.invitation import Invitation
from ..domain.ports import AccountDirectory
from ..domain.service import DirectoryService
from ..security.rate_limiter import build_rate_limiter
from ..security.tokens import decode_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

ERROR_STATUS: dict[type[DirectoryError], int] = {
    Unauthenticated: status.HTTP_401_UNAUTHORIZED,
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    ConflictExistingAccount: status.HTTP_409_CONFLICT,
    ConflictDuplicateInvite: status.HTTP_409_CONFLICT,
    AlreadyUsed: status.HTTP_409_CONFLICT,
    Expired: status.HTTP_410_GONE,
    Forbidden: status.HTTP_403_FORBIDDEN,
}


class AssociatedTenantResponse(BaseModel):
    tenant_id: str
    display_name: str
    status: str


class PreferencesResponse(BaseModel):
    theme: str
    notifications: bool
    current_tenant_id: str | None = None


class AccountResponse(BaseModel):
    """Serialised representation of an `Account`."""

    account_id: str
    email: str
    roles: list[str]
    tenant_ids: list[str]
    status: str
    is_verified: bool
    is_2fa_enabled: bool
    created_at: str


class ProfileResponse(BaseModel):
    display_name: str
    associated_tenants: list[AssociatedTenantResponse]
    preferences: PreferencesResponse


class RoleAssignmentResponse(BaseModel):
    user_id: str
    role_id: str
    scope: str


class UserCompositeResponse(BaseModel):
    """Account, profile and role assignments of a single user."""

    account: AccountResponse
    profile: ProfileResponse
    assignments: list[RoleAssignmentResponse]

    @classmethod
    def from_domain(cls, user: UserComposite) -> "UserCompositeResponse":
        """Build a response model from the domain composite."""
        account, profile = user.account, user.profile
        return cls(
            account=AccountResponse(
                account_id=account.account_id,
                email=account.email,
                roles=list(account.roles),
                tenant_ids=list(account.tenant_ids),
                status=account.status,
                is_verified=account.is_verified,
                is_2fa_enabled=account.is_2fa_enabled,
                created_at=account.created_at.isoformat(),
            ),
            profile=ProfileResponse(
                display_name=profile.display_name,
                associated_tenants=[
                    AssociatedTenantResponse(
                        tenant_id=tenant.tenant_id,
                        display_name=tenant.display_name,
                        status=tenant.status,
                    )
                    for tenant in profile.associated_tenants
                ],
                preferences=PreferencesResponse(
                    theme=profile.preferences.theme,
                    notifications=profile.preferences.notifications,
                    current_tenant_id=profile.preferences.current_tenant_id,
                ),
            ),
            assignments=[
                RoleAssignmentResponse(user_id=a.user_id, role_id=a.role_id, scope=a.scope)
                for a in user.assignments
            ],
        )


class UserListResponse(BaseModel):
    users: list[UserCompositeResponse]


class InviteRequest(BaseModel):
    """Payload accepted when inviting an email address into a scope."""

    scope: str
    email: str
    role: str


class InviteResponse(BaseModel):
    token: str
    invite_link: str
    expires_at: datetime


class InvitationEntry(BaseModel):
    invitation_id: str
    email: str
    target_tenant_id: str
    target_role_id: str
    invited_by_user_id: str
    status: str
    expires_at: datetime
    created_at: datetime
    accepted_at: datetime | None = None

    @classmethod
    def from_domain(cls, invitation: Invitation) -> "InvitationEntry":
        return cls(
            invitation_id=invitation.invitation_id,
            email=invitation.email,
            target_tenant_id=invitation.target_tenant_id,
            target_role_id=invitation.target_role_id,
            invited_by_user_id=invitation.invited_by_user_id,
            status=invitation.status.value,
            expires_at=invitation.expires_at,
            created_at=invitation.created_at,
            accepted_at=invitation.accepted_at,
        )


class InvitationListResponse(BaseModel):
    items: list[InvitationEntry]


class AcceptInviteRequest(BaseModel):
    token: str
    password: str | None = None
    display_name: str | None = None


class AcceptInviteResponse(BaseModel):
    success: bool = True
    user: UserCompositeResponse


class CreateUserRequest(BaseModel):
    """Administrator request to create a user directly inside a scope."""

    scope: str
    email: str
    name: str
    role: str


class RegisterRequest(BaseModel):
    """Self-registration payload for the personal workspace flow."""

    email: str
    name: str
    password: str | None = None


class AssignRoleRequest(BaseModel):
    target_user_id: str
    role_id: str
    scope: str


class AssignRoleResponse(BaseModel):
    success: bool


class AccessRequest(BaseModel):
    scope: str
    reason: str | None = None


class AccessRequestResponse(BaseModel):
    status: str = "accepted"


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()
rate_limiter = build_rate_limiter(settings)


def directory_error_handler(request: Request, exc: DirectoryError) -> JSONResponse:
    """Map a domain error to its HTTP status without exposing internals."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


def get_service(request: Request) -> DirectoryService:
    """Resolve the `DirectoryService` stored on the FastAPI application state."""
    service: DirectoryService = request.app.state.directory_service
    return service


def get_actor(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Account:
    """Authenticate the bearer token and resolve the actor's account."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthenticated("unauthorized")
    try:
        claims = decode_access_token(token)
    except jwt.PyJWTError as exc:
        logger.info("rejected bearer token: %s", exc)
        raise Unauthenticated("unauthorized") from exc

    accounts: AccountDirectory = request.app.state.account_directory
    actor = accounts.find_account_by_id(claims["sub"])
    if actor is None or actor.status == "disabled":
        raise Unauthenticated("identity not found")
    return actor


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


@router.get("/directory/users", response_model=UserListResponse)
def list_users(
    actor: Account = Depends(get_actor),
    service: DirectoryService = Depends(get_service),
) -> UserListResponse:
    """List the users the caller is allowed to manage."""
    users = service.list_managed_users(actor.account_id)
    return UserListResponse(users=[UserCompositeResponse.from_domain(user) for user in users])


@router.post(
    "/directory/invitations",
    response_model=InviteResponse,
    status_code=status.HTTP_201_CREATED,
)
def invite_user(
    payload: InviteRequest,
    actor: Account = Depends(get_actor),
    service: DirectoryService = Depends(get_service),
) -> InviteResponse:
    """Invite an email address into a scope with an initial role."""
    _enforce_rate_limit(f"invite:{actor.account_id}")
    invitation = service.invite_user_to_scope(
        actor.account_id, payload.scope, payload.email, payload.role
    )
    return InviteResponse(
        token=invitation.token,
        invite_link=service.build_invite_link(invitation),
        expires_at=invitation.expires_at,
    )


@router.get("/directory/invitations", response_model=InvitationListResponse)
def list_invitations(
    scope: str = Query(...),
    actor: Account = Depends(get_actor),
    service: DirectoryService = Depends(get_service),
) -> InvitationListResponse:
    invitations = service.list_invitations(actor.account_id, scope)
    return InvitationListResponse(items=[InvitationEntry.from_domain(i) for i in invitations])


@router.post("/directory/invitations/accept", response_model=AcceptInviteResponse)
def accept_invite(
    request: Request,
    payload: AcceptInviteRequest,
    service: DirectoryService = Depends(get_service),
) -> AcceptInviteResponse:
    """Redeem an invitation token."""
    client_host = request.client.host if request.client else "unknown"
    _enforce_rate_limit(f"accept:{client_host}")
    if not payload.token:
        raise InvalidInput("token required")
    user = service.accept_invite(
        AcceptInviteInput(
            token=payload.token,
            password=payload.password,
            display_name=payload.display_name,
        )
    )
    return AcceptInviteResponse(user=UserCompositeResponse.from_domain(user))


@router.post(
    "/directory/users",
    response_model=UserCompositeResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_user(
    payload: CreateUserRequest,
    actor: Account = Depends(get_actor),
    service: DirectoryService = Depends(get_service),
) -> UserCompositeResponse:
    user = service.create_user_in_scope(
        actor.account_id,
        payload.scope,
        CreateUserInput(email=payload.email, name=payload.name, initial_role=payload.role),
    )
    return UserCompositeResponse.from_domain(user)


@router.post(
    "/directory/register",
    response_model=UserCompositeResponse,
    status_code=status.HTTP_201_CREATED,
)
def register(
    payload: RegisterRequest,
    service: DirectoryService = Depends(get_service),
) -> UserCompositeResponse:
    """Self-register and receive a personal workspace."""
    user = service.provision_user_with_personal_scope(
        ProvisionUserInput(email=payload.email, name=payload.name, password=payload.password)
    )
    return UserCompositeResponse.from_domain(user)


@router.post("/directory/role-assignments", response_model=AssignRoleResponse)
def assign_role(
    payload: AssignRoleRequest,
    actor: Account = Depends(get_actor),
    service: DirectoryService = Depends(get_service),
) -> AssignRoleResponse:
    success = service.assign_role_securely(
        actor.account_id, payload.target_user_id, payload.role_id, payload.scope
    )
    return AssignRoleResponse(success=success)


@router.post(
    "/directory/access-requests",
    response_model=AccessRequestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def request_access(
    payload: AccessRequest,
    actor: Account = Depends(get_actor),
    service: DirectoryService = Depends(get_service),
) -> AccessRequestResponse:
    service.request_access_to_scope(actor.account_id, payload.scope, payload.reason)
    return AccessRequestResponse()


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    actor: Account = Depends(get_actor),
    service: DirectoryService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events for a tenant the caller manages."""
    records, next_cursor = service.list_audit_events(
        actor.account_id,
        tenant_id=tenant_id,
        account_id=account_id,
        event_type=event_type,
        created_after=created_after,
        created_before=created_before,
        limit=limit,
        cursor=cursor,
    )
    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            tenant_id=record.tenant_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)
