"""Roles, session principals and credential hashing.

The session cookie only ever carries a small role-keyed payload; it is
validated and turned into one of the principal types below on every request.
"""
import hmac
import os
from dataclasses import dataclass

from werkzeug.security import check_password_hash, generate_password_hash

SUPER_ADMIN = 'SUPER_ADMIN'
MANAGER = 'MANAGER'
MEMBER = 'MEMBER'
ROLES = (SUPER_ADMIN, MANAGER, MEMBER)

DEFAULT_MEMBER_SECRET = '1234'


@dataclass(frozen=True)
class SuperAdminPrincipal:
    name: str = 'Platform Admin'
    role: str = SUPER_ADMIN


@dataclass(frozen=True)
class ManagerPrincipal:
    gym_id: str
    role: str = MANAGER


@dataclass(frozen=True)
class MemberPrincipal:
    gym_id: str
    member_id: str
    role: str = MEMBER


Principal = SuperAdminPrincipal | ManagerPrincipal | MemberPrincipal


def _non_empty_str(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def principal_from_session(payload) -> Principal | None:
    """Rebuild a principal from a session payload, or None if it is malformed."""
    if not isinstance(payload, dict):
        return None
    role = payload.get('role')
    if role == SUPER_ADMIN:
        return SuperAdminPrincipal()
    if role == MANAGER and _non_empty_str(payload.get('gym_id')):
        return ManagerPrincipal(gym_id=payload['gym_id'])
    if role == MEMBER and _non_empty_str(payload.get('gym_id')) and _non_empty_str(payload.get('member_id')):
        return MemberPrincipal(gym_id=payload['gym_id'], member_id=payload['member_id'])
    return None


def principal_to_session(principal: Principal) -> dict:
    if isinstance(principal, SuperAdminPrincipal):
        return {'role': SUPER_ADMIN}
    if isinstance(principal, ManagerPrincipal):
        return {'role': MANAGER, 'gym_id': principal.gym_id}
    if isinstance(principal, MemberPrincipal):
        return {'role': MEMBER, 'gym_id': principal.gym_id, 'member_id': principal.member_id}
    raise TypeError(f"not a principal: {principal!r}")


def hash_secret(secret: str) -> str:
    return generate_password_hash(secret)


def verify_secret(secret: str, secret_hash: str | None) -> bool:
    if not secret or not secret_hash:
        return False
    return check_password_hash(secret_hash, secret)


def check_super_admin(username: str, password: str) -> bool:
    expected_user = os.getenv('SUPER_ADMIN_USERNAME', 'super')
    expected_pass = os.getenv('SUPER_ADMIN_PASSWORD', 'admin')
    return (hmac.compare_digest(username or '', expected_user)
            and hmac.compare_digest(password or '', expected_pass))
