"""
Principal descriptors and role-reference normalization.

Role references reach the decision functions in three shapes: role
objects loaded with the user, bare integer ids (token claims, API
payloads) and legacy bare role-name strings.  ``normalize_role_refs``
turns any mix of them into one tagged variant before resolution:

    ById(id) | ByName(name) | Resolved(role)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from procure.models import db
from procure.models.auth import Role, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ById:
    role_id: int


@dataclass(frozen=True)
class ByName:
    name: str


@dataclass(frozen=True)
class Resolved:
    role: Role


RoleRef = Union[ById, ByName, Resolved]


@dataclass(frozen=True)
class Principal:
    """Read-only view of a directory entry as the decision functions see it."""

    id: int | None
    role_refs: tuple = ()
    name: str | None = None
    department: str | None = None
    enabled: bool = True
    removed: bool = False


def normalize_role_ref(ref) -> RoleRef | None:
    """Tag a single raw reference; ``None`` for shapes that cannot be a role."""
    if isinstance(ref, (ById, ByName, Resolved)):
        return ref
    if isinstance(ref, Role):
        return Resolved(ref)
    if isinstance(ref, bool):
        return None
    if isinstance(ref, int):
        return ById(ref)
    if isinstance(ref, str):
        text = ref.strip()
        if not text:
            return None
        if text.isdigit():
            return ById(int(text))
        return ByName(text.lower())
    if isinstance(ref, dict):
        if ref.get("id") is not None:
            return normalize_role_ref(int(ref["id"]))
        if ref.get("name"):
            return ByName(str(ref["name"]).lower())
    return None


def normalize_role_refs(refs) -> tuple[RoleRef, ...]:
    tagged = []
    for raw in refs or ():
        ref = normalize_role_ref(raw)
        if ref is None:
            logger.debug("Dropping unrecognised role reference %r", raw)
            continue
        if ref not in tagged:
            tagged.append(ref)
    return tuple(tagged)


def principal_from_user(user: User | None) -> Principal | None:
    """Build a Principal from a directory row (direct roles + legacy names)."""
    if user is None:
        return None
    refs = list(user.roles) + list(user.legacy_role_names or [])
    return Principal(
        id=user.id,
        role_refs=normalize_role_refs(refs),
        name=user.name,
        department=user.department,
        enabled=bool(user.enabled),
        removed=bool(user.removed),
    )


def as_principal(subject) -> Principal | None:
    """Accept a Principal, a User row, or ``None``."""
    if subject is None or isinstance(subject, Principal):
        return subject
    if isinstance(subject, User):
        return principal_from_user(subject)
    raise TypeError(f"Cannot build a principal from {type(subject).__name__}")


def resolve_role_ref(ref: RoleRef) -> Role | None:
    """Load the role a reference points at.  Unknown or removed roles → ``None``.

    Lookup failures are logged and treated as unresolvable so callers
    degrade to a deny.
    """
    try:
        if isinstance(ref, Resolved):
            role = ref.role
        elif isinstance(ref, ById):
            role = db.session.get(Role, ref.role_id)
        else:
            role = Role.query.filter(func.lower(Role.name) == ref.name.lower()).first()
    except SQLAlchemyError:
        logger.exception("Role lookup failed for %r", ref)
        return None
    if role is None or role.removed:
        return None
    return role


def resolve_roles(principal: Principal) -> list[Role]:
    roles: list[Role] = []
    seen: set[int] = set()
    for ref in principal.role_refs:
        role = resolve_role_ref(ref)
        if role is None:
            continue
        key = role.id if role.id is not None else id(role)
        if key in seen:
            continue
        seen.add(key)
        roles.append(role)
    return roles


def role_names(principal: Principal) -> list[str]:
    """Names of the principal's roles, resolving ids through the registry."""
    names: list[str] = []
    for ref in principal.role_refs:
        if isinstance(ref, ByName):
            name = ref.name
        elif isinstance(ref, Resolved):
            name = ref.role.name
        else:
            role = resolve_role_ref(ref)
            name = role.name if role is not None else None
        if name and name not in names:
            names.append(name)
    return names
