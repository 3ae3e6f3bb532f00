"""Response schema exports."""

from .account import AccountListResponse, AccountOut, AdminOut, Pagination
from .audit import AuditEntryOut, AuditLogResponse, InvitationOut

__all__ = [
    "AccountListResponse",
    "AccountOut",
    "AdminOut",
    "Pagination",
    "AuditEntryOut",
    "AuditLogResponse",
    "InvitationOut",
]
