"""
Role graph traversal.

Roles inherit permissions from their ``inherits_from`` parents.  The graph
is expected to be a DAG, but rows written before cycle validation existed
(or edited directly in the database) may still contain diamonds and
cycles, so every traversal here is an explicit stack walk with a visited
set.
"""

from procure.models.auth import Role


def ancestors(role: Role) -> list[Role]:
    """Return *role* and every role reachable through ``inherits_from``.

    Each role appears once, in depth-first discovery order.  Removed roles
    are neither returned nor traversed.
    """
    if role is None or role.removed:
        return []
    seen: set[int] = set()
    ordered: list[Role] = []
    stack = [role]
    while stack:
        current = stack.pop()
        key = current.id if current.id is not None else id(current)
        if key in seen or current.removed:
            continue
        seen.add(key)
        ordered.append(current)
        # reversed() keeps discovery order aligned with declaration order
        stack.extend(reversed(current.inherits_from))
    return ordered


def closure(role: Role) -> frozenset[int]:
    """Permission ids granted by *role* directly or through inheritance."""
    granted: set[int] = set()
    for node in ancestors(role):
        granted.update(p.id for p in node.permissions if p.id is not None)
    return frozenset(granted)


def find_cycle(role: Role, proposed_parents: list[Role]) -> list[str] | None:
    """Return the role-name path of a cycle that *proposed_parents* would create.

    The check walks upward from every proposed parent; reaching *role*
    again means the new edges close a loop.  ``None`` when the edges are safe.
    """
    for parent in proposed_parents:
        if parent is role or (role.id is not None and parent.id == role.id):
            return [role.name, role.name]
        path = _path_to(parent, role)
        if path is not None:
            return [role.name] + path
    return None


def _path_to(start: Role, target: Role) -> list[str] | None:
    visited: set[int] = set()
    stack: list[tuple[Role, list[str]]] = [(start, [start.name])]
    while stack:
        current, path = stack.pop()
        if current.id in visited:
            continue
        visited.add(current.id)
        for parent in current.inherits_from:
            if parent is target or parent.id == target.id:
                return path + [target.name]
            stack.append((parent, path + [parent.name]))
    return None
