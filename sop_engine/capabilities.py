"""
SOP Engine — Injected Capabilities

The engine never reaches for ambient state. Permission checks and
persistence callbacks are passed into the sequencer at construction.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable, Protocol, runtime_checkable

from sop_engine.types import TaskEvidence

RETAIN_ORIGINAL_EVIDENCE = "task:retain_original_evidence"

# Persistence callbacks (owned by the sync backend)
OnComplete = Callable[[list[TaskEvidence]], Awaitable[None]]
OnSaveDraft = Callable[[list[TaskEvidence], int], Awaitable[None]]
OnClose = Callable[[], None]


@runtime_checkable
class PermissionChecker(Protocol):
    def can(self, permission: str) -> bool:
        ...


class StaticPermissions:
    """
    Fixed permission set, e.g. resolved by the caller for the
    current user. "*" grants everything.
    """

    def __init__(self, granted: Iterable[str] = ()):
        self._granted = set(granted)

    def can(self, permission: str) -> bool:
        return "*" in self._granted or permission in self._granted


class DenyAll:
    def can(self, permission: str) -> bool:
        return False


# Task-execution grants per system role. Roles not listed get nothing.
ROLE_GRANTS: dict[str, frozenset[str]] = {
    "org_admin": frozenset({"*"}),
    "site_manager": frozenset({RETAIN_ORIGINAL_EVIDENCE}),
    "head_grower": frozenset({RETAIN_ORIGINAL_EVIDENCE}),
    "compliance_qa": frozenset({RETAIN_ORIGINAL_EVIDENCE}),
    "operator": frozenset(),
    "executive_viewer": frozenset(),
    "installer_tech": frozenset(),
    "support": frozenset(),
    "developer": frozenset({"*"}),
}


class RolePermissions(StaticPermissions):
    """
    Permissions resolved from the current user's role.

    Usage:
        RolePermissions("compliance_qa").can(RETAIN_ORIGINAL_EVIDENCE)  # True
        RolePermissions("operator").can(RETAIN_ORIGINAL_EVIDENCE)       # False
    """

    def __init__(self, role: str | None, grants: dict[str, frozenset[str]] | None = None):
        self.role = role or ""
        table = ROLE_GRANTS if grants is None else grants
        super().__init__(table.get(self.role, ()))


def permissions_for(
    user_role: str | None,
    permissions: PermissionChecker | None = None,
) -> PermissionChecker:
    """Explicit checker if given, else the role's grants, else deny everything."""
    if permissions is not None:
        return permissions
    if user_role:
        return RolePermissions(user_role)
    return DenyAll()
