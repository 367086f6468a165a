"""Capability checks for admin-only operations and fields."""

from dataclasses import dataclass
from typing import Optional, Protocol

from fastapi import Header


@dataclass(frozen=True)
class Principal:
    user_id: Optional[int]
    role: str = "anonymous"


class Authorizer(Protocol):
    def authorize(self, principal: Principal, action: str, resource: str) -> bool: ...


class RoleAuthorizer:
    """Role table lookup: admins may do anything, users only read."""

    def __init__(self, grants: Optional[dict] = None):
        self.grants = grants or {
            "admin": {
                ("manage", "ranking"),
                ("manage", "contest"),
                ("read", "ranking"),
                ("read", "ranking:internal"),
                ("read", "submission:internal"),
            },
            "user": {("read", "ranking")},
            "anonymous": {("read", "ranking")},
        }

    def authorize(self, principal: Principal, action: str, resource: str) -> bool:
        return (action, resource) in self.grants.get(principal.role, set())


authorizer = RoleAuthorizer()


def get_principal(
    x_user_id: Optional[int] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Principal:
    """Principal forwarded by the authenticating gateway."""
    return Principal(user_id=x_user_id, role=(x_user_role or "anonymous").lower())
