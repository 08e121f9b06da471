"""
scifair/rbac.py
Role-Based Access Control for the judging engine.

Roles are a closed set (UserRole). What each role may do is data, not code:
ROLE_CAPABILITIES maps a role to the roles it may grant and the competition
levels it may manage. Jurisdiction follows the judge's *work* geography: the
most specific work field a judge has decides which admin tier assigns them.
"""
import os
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional, Tuple

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from jose import JWTError, jwt

from scifair.core.geo_scope import GeoScope
from scifair.database import get_db
from scifair.errors import ErrorCode
from scifair.orm.competition import CompetitionLevel, LEVEL_SEQUENCE
from scifair.orm.user import User, UserRole, ADMIN_ROLES

logger = logging.getLogger(__name__)

# ================= CONFIG =================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

# ================= CAPABILITY TABLE =================

# Seniority order; a role may grant any role below itself
ROLE_HIERARCHY = [
    UserRole.SUPER_ADMIN,
    UserRole.NATIONAL_ADMIN,
    UserRole.REGIONAL_ADMIN,
    UserRole.COUNTY_ADMIN,
    UserRole.SUB_COUNTY_ADMIN,
    UserRole.COORDINATOR,
    UserRole.JUDGE,
    UserRole.PATRON,
]


@dataclass(frozen=True)
class RoleCapability:
    creatable_roles: FrozenSet[UserRole]
    assignable_levels: FrozenSet[CompetitionLevel]


def _below(role: UserRole) -> FrozenSet[UserRole]:
    return frozenset(ROLE_HIERARCHY[ROLE_HIERARCHY.index(role) + 1:])


ROLE_CAPABILITIES: Dict[UserRole, RoleCapability] = {
    UserRole.SUPER_ADMIN: RoleCapability(_below(UserRole.SUPER_ADMIN), frozenset(LEVEL_SEQUENCE)),
    UserRole.NATIONAL_ADMIN: RoleCapability(
        _below(UserRole.NATIONAL_ADMIN), frozenset({CompetitionLevel.NATIONAL})
    ),
    UserRole.REGIONAL_ADMIN: RoleCapability(
        _below(UserRole.REGIONAL_ADMIN), frozenset({CompetitionLevel.REGIONAL})
    ),
    UserRole.COUNTY_ADMIN: RoleCapability(
        _below(UserRole.COUNTY_ADMIN), frozenset({CompetitionLevel.COUNTY})
    ),
    UserRole.SUB_COUNTY_ADMIN: RoleCapability(
        _below(UserRole.SUB_COUNTY_ADMIN), frozenset({CompetitionLevel.SUB_COUNTY})
    ),
    UserRole.COORDINATOR: RoleCapability(frozenset(), frozenset()),
    UserRole.JUDGE: RoleCapability(frozenset(), frozenset()),
    UserRole.PATRON: RoleCapability(frozenset(), frozenset()),
}


def acting_admin_role(user: User) -> Optional[UserRole]:
    """The admin role a user acts with: their current role if it is an admin role, else their most senior one."""
    if user.current_role:
        try:
            current = UserRole(user.current_role)
        except ValueError:
            current = None
        if current in ADMIN_ROLES:
            return current
    return user.highest_admin_role()


def capability_for(user: User) -> RoleCapability:
    role = acting_admin_role(user)
    if role is None:
        return ROLE_CAPABILITIES[UserRole.JUDGE]
    return ROLE_CAPABILITIES[role]


def can_manage_level(admin: User, level: CompetitionLevel) -> bool:
    return level in capability_for(admin).assignable_levels


def can_grant_role(admin: User, role: UserRole) -> bool:
    return role in capability_for(admin).creatable_roles


def is_super_admin(user: User) -> bool:
    return user.has_role(UserRole.SUPER_ADMIN)


# ================= JURISDICTION =================

def required_admin_role_for_judge(judge: User) -> UserRole:
    """Admin tier responsible for a judge, from the most specific work field set."""
    if judge.work_sub_county:
        return UserRole.SUB_COUNTY_ADMIN
    if judge.work_county:
        return UserRole.COUNTY_ADMIN
    if judge.work_region:
        return UserRole.REGIONAL_ADMIN
    return UserRole.NATIONAL_ADMIN


def check_assignment_permission(admin: User, judge: User) -> Tuple[bool, str]:
    """
    Check that `admin` has jurisdiction over `judge`.

    Returns:
        Tuple of (allowed, reason)
    """
    role = acting_admin_role(admin)
    if role == UserRole.SUPER_ADMIN:
        return True, ""

    required = required_admin_role_for_judge(judge)
    if role != required:
        return False, f"This judge must be assigned by a {required.value}."

    if role == UserRole.SUB_COUNTY_ADMIN:
        if (admin.work_sub_county != judge.work_sub_county
                or admin.work_county != judge.work_county
                or admin.work_region != judge.work_region):
            return False, f"You are not the admin for the '{judge.work_sub_county}' sub-county."
    elif role == UserRole.COUNTY_ADMIN:
        if admin.work_county != judge.work_county or admin.work_region != judge.work_region:
            return False, f"You are not the admin for the '{judge.work_county}' county."
    elif role == UserRole.REGIONAL_ADMIN:
        if admin.work_region != judge.work_region:
            return False, f"You are not the admin for the '{judge.work_region}' region."

    return True, ""


def admin_scope(admin: User) -> GeoScope:
    """Geographic scope an admin manages, derived from their acting role and work geography."""
    role = acting_admin_role(admin)
    if role == UserRole.SUB_COUNTY_ADMIN:
        return GeoScope(admin.work_region, admin.work_county, admin.work_sub_county)
    if role == UserRole.COUNTY_ADMIN:
        return GeoScope(admin.work_region, admin.work_county)
    if role == UserRole.REGIONAL_ADMIN:
        return GeoScope(admin.work_region)
    return GeoScope()


def admin_role_for_level(level: CompetitionLevel) -> UserRole:
    """Admin tier that manages judging at `level`."""
    return {
        CompetitionLevel.SUB_COUNTY: UserRole.SUB_COUNTY_ADMIN,
        CompetitionLevel.COUNTY: UserRole.COUNTY_ADMIN,
        CompetitionLevel.REGIONAL: UserRole.REGIONAL_ADMIN,
        CompetitionLevel.NATIONAL: UserRole.NATIONAL_ADMIN,
    }[level]


def judge_admin_level(judge: User) -> Optional[CompetitionLevel]:
    """Competition level matching the most senior admin role a judge also holds."""
    role = judge.highest_admin_role()
    return {
        UserRole.SUB_COUNTY_ADMIN: CompetitionLevel.SUB_COUNTY,
        UserRole.COUNTY_ADMIN: CompetitionLevel.COUNTY,
        UserRole.REGIONAL_ADMIN: CompetitionLevel.REGIONAL,
        UserRole.NATIONAL_ADMIN: CompetitionLevel.NATIONAL,
        UserRole.SUPER_ADMIN: CompetitionLevel.NATIONAL,
    }.get(role)


# ================= TOKEN UTILS =================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token; `sub` carries the user's email."""
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "type": "access"
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


# ================= AUTH DEPENDENCIES =================

async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Get current authenticated user from JWT access token.
    Returns 401 if token is invalid or expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "success": False,
            "error": "Unauthorized",
            "message": "Invalid or expired token",
            "code": ErrorCode.AUTH_INVALID
        },
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        raise credentials_exception

    email = payload.get("sub")
    if not email:
        raise credentials_exception

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise credentials_exception

    return user


def require_roles(*allowed_roles: UserRole):
    """
    Dependency factory: require the current user to hold one of `allowed_roles`.
    Usage: current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN))
    """
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not any(current_user.has_role(role) for role in allowed_roles):
            logger.warning(
                f"Access denied: User {current_user.id} with roles {current_user.roles} "
                f"attempted to access resource requiring {[r.value for r in allowed_roles]}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "success": False,
                    "error": "Forbidden",
                    "message": f"This action requires one of: {[r.value for r in allowed_roles]}",
                    "code": ErrorCode.FORBIDDEN,
                }
            )
        return current_user
    return dependency


require_admin = require_roles(*ADMIN_ROLES)
