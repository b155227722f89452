"""
Permission predicates.

Pure function of (project role, app role, entity) to capability flags.
Table-driven: the app role sets the base capabilities, the project role
and entity only widen them for non-viewers.
"""
from dataclasses import dataclass, replace
from typing import Dict, Optional

from app.models.enums import AppRole, Entity, ProjectRole, ReviewParty


@dataclass(frozen=True)
class PermissionFlags:
    can_edit_content: bool = False
    can_sign: bool = False
    can_delete: bool = False
    is_contractor_user: bool = False
    is_admin: bool = False


_APP_ROLE_FLAGS: Dict[AppRole, PermissionFlags] = {
    AppRole.ADMIN: PermissionFlags(can_edit_content=True, can_sign=True, can_delete=True, is_admin=True),
    AppRole.EDITOR: PermissionFlags(can_edit_content=True, can_sign=True),
    AppRole.VIEWER: PermissionFlags(),
}

# Project roles that carry administrative rights on top of a non-viewer app role
_ADMIN_PROJECT_ROLES = {ProjectRole.ADMIN}

_CONTRACTOR_PROJECT_ROLES = {ProjectRole.CONTRACTOR_REP}


def compute_flags(
    project_role: Optional[ProjectRole],
    app_role: Optional[AppRole],
    entity: Optional[Entity],
) -> PermissionFlags:
    """
    Compute the capability flags for a role triple.

    A missing app role is treated as viewer. Viewers never edit, sign,
    delete or administer, whatever their project role.
    """
    app_role = app_role or AppRole.VIEWER
    flags = _APP_ROLE_FLAGS[app_role]

    is_contractor = entity == Entity.CONTRATISTA or project_role in _CONTRACTOR_PROJECT_ROLES
    flags = replace(flags, is_contractor_user=is_contractor)

    if app_role != AppRole.VIEWER and project_role in _ADMIN_PROJECT_ROLES:
        flags = replace(flags, is_admin=True, can_delete=True)

    return flags


def flags_for(user) -> PermissionFlags:
    """Capability flags of a user (anything with project_role, app_role and entity)."""
    return compute_flags(user.project_role, user.app_role, user.entity)


def can_be_signatory(user) -> bool:
    return flags_for(user).can_sign


def party_of(user) -> Optional[ReviewParty]:
    """
    Which side of the sequential hand-off a user acts for.

    IDU users belong to neither party.
    """
    if flags_for(user).is_contractor_user:
        return ReviewParty.CONTRACTOR
    if user.entity == Entity.INTERVENTORIA or user.project_role == ProjectRole.SUPERVISOR:
        return ReviewParty.INTERVENTORIA
    return None
