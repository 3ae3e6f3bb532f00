"""Administrative HTTP routes: account lifecycle, listings, audit log and invitations."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr

from ..domain.account import AccountStatus, Role
from ..domain.contracts import AccountListFilters, AuditLogFilters
from ..domain.errors import NotFoundError, ValidationError
from ..domain.invitations import InvitationService
from ..domain.lifecycle import AccountLifecycleManager
from ..domain.results import ActionResult
from ..domain.service import AccountService, Principal
from ..schemas import (
    AccountListResponse,
    AccountOut,
    AdminOut,
    AuditEntryOut,
    AuditLogResponse,
    InvitationOut,
    Pagination,
)
from .dependencies import client_ip, get_invitations, get_lifecycle, get_service, require_admin
from .handlers import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])

_SUCCESS_MESSAGES = {
    "suspend": "User suspended successfully",
    "block": "User blocked successfully",
    "reactivate": "User reactivated successfully",
    "restore": "User restored successfully",
    "delete": "User deleted successfully",
    "promote": "User promoted successfully",
    "demote": "User demoted successfully",
}


class AccountActionRequest(BaseModel):
    action: Literal["suspend", "block", "reactivate", "restore"]
    reason: str | None = None
    duration: int | None = None


class DeleteAccountRequest(BaseModel):
    reason: str | None = None


class PromoteRequest(BaseModel):
    new_role: str


class DemoteRequest(BaseModel):
    email: EmailStr


class CreateInvitationRequest(BaseModel):
    email: EmailStr
    role: str = Role.admin.value
    expiration_hours: int | None = None


def _account_result(result: ActionResult, action: str) -> Any:
    if not result.success:
        return error_response(result.status_code, result.error or "Request failed")
    return {
        "success": True,
        "message": _SUCCESS_MESSAGES[action],
        "account": AccountOut.from_domain(result.value).model_dump(mode="json"),
    }


def _parse_enum(enum_cls, value: str | None, label: str):
    if value is None or value == "" or value == "all":
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"unknown {label}: {value}") from exc


@router.get("/accounts", response_model=AccountListResponse)
def list_accounts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: str | None = Query(default=None),
    role: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    _: Principal = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountListResponse:
    filters = AccountListFilters(
        page=page,
        limit=limit,
        search=search or None,
        role=_parse_enum(Role, role, "role"),
        status=_parse_enum(AccountStatus, status_filter, "status"),
    )
    accounts, total = service.list_accounts(filters)
    return AccountListResponse(
        accounts=[AccountOut.from_domain(account) for account in accounts],
        pagination=Pagination(current=page, total=math.ceil(total / limit), count=total),
    )


@router.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: str,
    _: Principal = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AccountOut:
    account = service.get_account(account_id)
    if account is None:
        raise NotFoundError("User not found")
    return AccountOut.from_domain(account)


@router.patch("/accounts/{account_id}")
def update_account_status(
    account_id: str,
    payload: AccountActionRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle),
) -> Any:
    ip = client_ip(request)
    if payload.action == "suspend":
        result = lifecycle.suspend(principal.email, account_id, payload.reason, payload.duration, ip)
    elif payload.action == "block":
        result = lifecycle.block(principal.email, account_id, payload.reason, ip)
    elif payload.action == "reactivate":
        result = lifecycle.reactivate(principal.email, account_id, ip)
    else:
        result = lifecycle.restore(principal.email, account_id, payload.reason, ip)
    return _account_result(result, payload.action)


@router.delete("/accounts/{account_id}")
def delete_account(
    account_id: str,
    payload: DeleteAccountRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle),
) -> Any:
    """Soft delete; a reason is mandatory."""
    result = lifecycle.delete(principal.email, account_id, payload.reason, client_ip(request))
    return _account_result(result, "delete")


@router.post("/accounts/demote")
def demote_account(
    payload: DemoteRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle),
) -> Any:
    result = lifecycle.demote(principal.email, payload.email, client_ip(request))
    return _account_result(result, "demote")


@router.post("/accounts/{account_id}/promote")
def promote_account(
    account_id: str,
    payload: PromoteRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle),
) -> Any:
    result = lifecycle.promote(principal.email, account_id, payload.new_role, client_ip(request))
    return _account_result(result, "promote")


@router.get("/admins", response_model=list[AdminOut])
def list_admins(
    _: Principal = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> list[AdminOut]:
    return [AdminOut.from_domain(account) for account in service.list_admins()]


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    action: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    search: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    _: Principal = Depends(require_admin),
    service: AccountService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events with optional filtering."""
    records, next_cursor = service.list_audit_events(
        AuditLogFilters(
            action=action or None,
            created_after=created_after,
            created_before=created_before,
            search=search or None,
        ),
        limit=limit,
        cursor=cursor,
    )
    return AuditLogResponse(items=[AuditEntryOut.from_domain(r) for r in records], next_cursor=next_cursor)


@router.post("/invitations", status_code=status.HTTP_201_CREATED)
def create_invitation(
    payload: CreateInvitationRequest,
    request: Request,
    principal: Principal = Depends(require_admin),
    invitations: InvitationService = Depends(get_invitations),
) -> Any:
    role = Role.parse(payload.role)
    if role is None:
        raise ValidationError(f"unknown role: {payload.role}")
    result = invitations.create(
        principal.email, payload.email, role, payload.expiration_hours, client_ip(request)
    )
    if not result.success:
        return error_response(result.status_code, result.error or "Request failed")
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "success": True,
            "message": "Invitation created successfully",
            "invitation": InvitationOut.from_domain(result.value).model_dump(mode="json"),
        },
    )


@router.get("/invitations", response_model=list[InvitationOut])
def list_invitations(
    _: Principal = Depends(require_admin),
    invitations: InvitationService = Depends(get_invitations),
) -> list[InvitationOut]:
    return [InvitationOut.from_domain(invitation) for invitation in invitations.list_pending()]


@router.delete("/invitations/{invitation_id}")
def revoke_invitation(
    invitation_id: str,
    request: Request,
    principal: Principal = Depends(require_admin),
    invitations: InvitationService = Depends(get_invitations),
) -> Any:
    result = invitations.revoke(principal.email, invitation_id, client_ip(request))
    if not result.success:
        return error_response(result.status_code, result.error or "Request failed")
    return {"success": True, "message": "Invitation revoked successfully"}
