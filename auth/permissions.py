"""
auth/permissions.py -- ACL-based endpoint permission checks.

An ACL, once resolved, is a list of Permission(resource, methods). A resource
ending in "*" matches any endpoint starting with the rest of the pattern;
anything else must equal the endpoint exactly. Entries are OR-ed and there are
no deny rules, so the answer is "deny" unless some entry allows.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from core.models import Acl, AclAction, Module, Permission, Role

_WILDCARD = "*"


def _matches(pattern: str, endpoint: str) -> bool:
    if pattern.endswith(_WILDCARD):
        return endpoint.startswith(pattern[: -len(_WILDCARD)])
    return endpoint == pattern


def is_allowed(acl: Iterable[Permission], endpoint: str, method: str) -> bool:
    """Return True if any permission entry matches endpoint and lists method."""
    method = method.upper()
    allowed = False
    for permission in acl:
        if _matches(permission.resource, endpoint) and method in {m.upper() for m in permission.methods}:
            allowed = True
    return allowed


def resolve_acl(acl: Acl, modules: Iterable[Module], actions: Iterable[AclAction]) -> list[Permission]:
    """Turn a stored Acl into evaluator input.

    Each AclPermission becomes Permission(module.route, [action names]).
    Entries whose module is missing (deleted or foreign) are dropped; unknown
    action ids are ignored.
    """
    modules_by_id = {m.id: m for m in modules}
    actions_by_id = {a.id: a for a in actions}
    resolved: list[Permission] = []
    for entry in acl.permissions:
        module = modules_by_id.get(entry.module_id)
        if module is None:
            continue
        methods = [actions_by_id[a].name for a in entry.actions if a in actions_by_id]
        resolved.append(Permission(resource=module.route, methods=methods))
    return resolved


def find_role(role_table: Iterable[Role], group: Optional[str]) -> Optional[Role]:
    """Return the role whose group equals group, or None."""
    if group is None:
        return None
    return next((role for role in role_table if role.group == group), None)


def parse_role_table(raw: Iterable[dict]) -> list[Role]:
    """Build Role objects from plain dicts: [{"group", "permissions": [{"resource", "methods"}]}]."""
    return [
        Role(
            group=entry["group"],
            permissions=[
                Permission(resource=p["resource"], methods=list(p.get("methods", [])))
                for p in entry.get("permissions", [])
            ],
        )
        for entry in raw
    ]
