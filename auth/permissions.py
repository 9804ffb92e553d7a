"""
auth/permissions.py -- Permission catalog and role-based authorization.

The catalog is closed and static: PermissionCode enumerates every code the
application knows, and CATALOG attaches the label/category the admin UI
renders. Only the role -> code grant mapping lives in the database.

Rules:
  - A code outside the catalog never authorizes. Grant edits reject unknown
    codes before writing (UnknownPermission); grants already stored for codes
    that have since left the catalog are ignored on read.
  - An unknown role has no permissions.
  - SUPERUSER_ROLE bypasses the table. This is the single hard-coded
    exception; no row in role_permissions can grant it.
  - set_permissions() replaces a role's whole grant set in one transaction,
    so a concurrent reader sees either the old set or the new one.
  - A storage failure while resolving grants is treated as "no grants".

Bump CATALOG_VERSION whenever a code is added, renamed or retired.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select

from auth.database import Database, role_permissions
from auth.errors import StorageUnavailable, UnknownPermission

logger = logging.getLogger("authcore.permissions")

SUPERUSER_ROLE = "admin"

CATALOG_VERSION = 2


class PermissionCode(str, Enum):
    ADMISSIONS_VIEW = "admissions.view"
    ADMISSIONS_CREATE = "admissions.create"
    ADMISSIONS_EDIT = "admissions.edit"
    ADMISSIONS_CANCEL = "admissions.cancel"

    TRANSFERS_VIEW = "transfers.view"
    TRANSFERS_CREATE = "transfers.create"
    TRANSFERS_APPROVE = "transfers.approve"
    TRANSFERS_CANCEL = "transfers.cancel"
    TRANSFERS_RECTIFY = "transfers.rectify"

    VACATIONS_VIEW = "vacations.view"
    VACATIONS_CREATE = "vacations.create"
    VACATIONS_APPROVE = "vacations.approve"
    VACATIONS_CANCEL = "vacations.cancel"

    DISMISSALS_VIEW = "dismissals.view"
    DISMISSALS_CREATE = "dismissals.create"
    DISMISSALS_APPROVE = "dismissals.approve"
    DISMISSALS_CANCEL = "dismissals.cancel"

    EMPLOYEES_VIEW = "employees.view"
    EMPLOYEES_EDIT = "employees.edit"

    COMPANIES_VIEW = "companies.view"

    CORPORATE_VIEW = "corporate.view"
    CORPORATE_EDIT = "corporate.edit"
    CORPORATE_PROCESSES_VIEW = "corporate.processes.view"
    CORPORATE_PROCESSES_EDIT = "corporate.processes.edit"

    INTEGRATIONS_VIEW = "integrations.view"
    INTEGRATIONS_ENUVES = "integrations.enuves"
    INTEGRATIONS_EKLESIA = "integrations.eklesia"

    USERS_VIEW = "users.view"
    USERS_MANAGE = "users.manage"

    AUDIT_VIEW = "audit.view"


@dataclass(frozen=True)
class PermissionInfo:
    code: PermissionCode
    label: str
    category: str


CATALOG: tuple[PermissionInfo, ...] = (
    PermissionInfo(PermissionCode.ADMISSIONS_VIEW, "View admissions", "Admissions"),
    PermissionInfo(PermissionCode.ADMISSIONS_CREATE, "Create admission", "Admissions"),
    PermissionInfo(PermissionCode.ADMISSIONS_EDIT, "Rectify admission", "Admissions"),
    PermissionInfo(PermissionCode.ADMISSIONS_CANCEL, "Cancel admission", "Admissions"),
    PermissionInfo(PermissionCode.TRANSFERS_VIEW, "View transfers", "Transfers"),
    PermissionInfo(PermissionCode.TRANSFERS_CREATE, "Request transfer", "Transfers"),
    PermissionInfo(PermissionCode.TRANSFERS_APPROVE, "Complete transfer", "Transfers"),
    PermissionInfo(PermissionCode.TRANSFERS_CANCEL, "Cancel transfer", "Transfers"),
    PermissionInfo(PermissionCode.TRANSFERS_RECTIFY, "Rectify transfer", "Transfers"),
    PermissionInfo(PermissionCode.VACATIONS_VIEW, "View vacations", "Vacations"),
    PermissionInfo(PermissionCode.VACATIONS_CREATE, "Request vacation", "Vacations"),
    PermissionInfo(PermissionCode.VACATIONS_APPROVE, "Complete vacation", "Vacations"),
    PermissionInfo(PermissionCode.VACATIONS_CANCEL, "Cancel vacation", "Vacations"),
    PermissionInfo(PermissionCode.DISMISSALS_VIEW, "View dismissals", "Dismissals"),
    PermissionInfo(PermissionCode.DISMISSALS_CREATE, "Request dismissal", "Dismissals"),
    PermissionInfo(PermissionCode.DISMISSALS_APPROVE, "Complete dismissal", "Dismissals"),
    PermissionInfo(PermissionCode.DISMISSALS_CANCEL, "Cancel dismissal", "Dismissals"),
    PermissionInfo(PermissionCode.EMPLOYEES_VIEW, "View employees", "Employees"),
    PermissionInfo(PermissionCode.EMPLOYEES_EDIT, "Edit employees", "Employees"),
    PermissionInfo(PermissionCode.COMPANIES_VIEW, "View companies", "Companies"),
    PermissionInfo(PermissionCode.CORPORATE_VIEW, "View corporate module", "Corporate"),
    PermissionInfo(PermissionCode.CORPORATE_EDIT, "Edit corporate data", "Corporate"),
    PermissionInfo(PermissionCode.CORPORATE_PROCESSES_VIEW, "View corporate processes", "Corporate"),
    PermissionInfo(PermissionCode.CORPORATE_PROCESSES_EDIT, "Edit corporate processes", "Corporate"),
    PermissionInfo(PermissionCode.INTEGRATIONS_VIEW, "Access integrations", "Integrations"),
    PermissionInfo(PermissionCode.INTEGRATIONS_ENUVES, "Access Enuves", "Integrations"),
    PermissionInfo(PermissionCode.INTEGRATIONS_EKLESIA, "Access Eklesia", "Integrations"),
    PermissionInfo(PermissionCode.USERS_VIEW, "View users", "Users"),
    PermissionInfo(PermissionCode.USERS_MANAGE, "Manage users and temporary passwords", "Users"),
    PermissionInfo(PermissionCode.AUDIT_VIEW, "View and export the audit trail", "Audit"),
)


def parse_permission(code: str | PermissionCode) -> PermissionCode:
    """Validate a raw code against the catalog. Raises UnknownPermission."""
    if isinstance(code, PermissionCode):
        return code
    try:
        return PermissionCode(code)
    except ValueError:
        raise UnknownPermission(code) from None


class PermissionEvaluator:
    """Resolves roles to grant sets and answers authorization queries.

    Constructed with an injected Database and passed to every call site;
    there is no module-level grant table.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def permissions_for(self, role: str) -> frozenset[PermissionCode]:
        try:
            with self._db.connect() as conn:
                rows = conn.execute(
                    role_permissions.select().where(role_permissions.c.role == role)
                ).fetchall()
        except StorageUnavailable:
            logger.warning("Permission lookup failed closed for role %r", role)
            return frozenset()
        granted = set()
        for row in rows:
            try:
                granted.add(PermissionCode(row.permission))
            except ValueError:
                logger.warning("Ignoring stored grant %r for role %r: not in catalog", row.permission, role)
        return frozenset(granted)

    def authorize(self, role: str, code: str | PermissionCode) -> bool:
        try:
            permission = parse_permission(code)
        except UnknownPermission:
            logger.warning("Authorization denied for unknown permission code %r", code)
            return False
        if role == SUPERUSER_ROLE:
            return True
        return permission in self.permissions_for(role)

    def set_permissions(self, role: str, codes: Iterable[str | PermissionCode]) -> frozenset[PermissionCode]:
        """Atomically replace the grant set for role.

        Every code is validated before anything is written; one unknown code
        rejects the whole update.
        """
        granted = frozenset(parse_permission(c) for c in codes)
        with self._db.begin() as conn:
            conn.execute(role_permissions.delete().where(role_permissions.c.role == role))
            if granted:
                conn.execute(
                    role_permissions.insert(),
                    [{"role": role, "permission": p.value} for p in sorted(granted, key=lambda p: p.value)],
                )
        logger.info("Permissions for role %r replaced (%d grants)", role, len(granted))
        return granted

    def roles(self) -> list[str]:
        """Roles that currently hold at least one grant, sorted."""
        with self._db.connect() as conn:
            rows = conn.execute(select(role_permissions.c.role).distinct()).fetchall()
        return sorted(r.role for r in rows)
