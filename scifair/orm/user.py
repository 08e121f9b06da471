"""
scifair/orm/user.py
Judges, coordinators, administrators and patrons.

A user carries two independent geographies:
- personal (region, county, sub_county, zone, school): home location, used for
  conflict-of-interest checks against a project's school
- work (work_region, work_county, work_sub_county): jurisdiction that decides
  which administrator may assign them
"""
from enum import Enum
from typing import List, Optional

from sqlalchemy import Column, String, Boolean

from scifair.core.db_types import JSONList
from scifair.orm.base import BaseModel


class UserRole(str, Enum):
    """Roles a user can hold. A user may hold several at once."""
    SUPER_ADMIN = "Super Admin"
    NATIONAL_ADMIN = "National Admin"
    REGIONAL_ADMIN = "Regional Admin"
    COUNTY_ADMIN = "County Admin"
    SUB_COUNTY_ADMIN = "Sub-County Admin"
    COORDINATOR = "Coordinator"
    JUDGE = "Judge"
    PATRON = "Patron"


ADMIN_ROLES = (
    UserRole.SUPER_ADMIN,
    UserRole.NATIONAL_ADMIN,
    UserRole.REGIONAL_ADMIN,
    UserRole.COUNTY_ADMIN,
    UserRole.SUB_COUNTY_ADMIN,
)


class User(BaseModel):
    __tablename__ = "users"

    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    roles = Column(JSONList, nullable=False, default=list)
    current_role = Column(String(30), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Personal geography
    region = Column(String(100), nullable=True)
    county = Column(String(100), nullable=True)
    sub_county = Column(String(100), nullable=True)
    zone = Column(String(100), nullable=True)
    school = Column(String(200), nullable=True)

    # Work jurisdiction
    work_region = Column(String(100), nullable=True)
    work_county = Column(String(100), nullable=True)
    work_sub_county = Column(String(100), nullable=True)

    coordinated_category = Column(String(100), nullable=True)

    def role_set(self) -> List[UserRole]:
        return [UserRole(r) for r in (self.roles or [])]

    def has_role(self, role: UserRole) -> bool:
        return role.value in (self.roles or [])

    def admin_roles(self) -> List[UserRole]:
        return [r for r in self.role_set() if r in ADMIN_ROLES]

    def highest_admin_role(self) -> Optional[UserRole]:
        """Most senior admin role held, following ADMIN_ROLES order."""
        held = set(self.admin_roles())
        for role in ADMIN_ROLES:
            if role in held:
                return role
        return None

    def set_roles(self, roles: List[UserRole]) -> None:
        """Replace roles, keeping current_role valid."""
        values = []
        for role in roles:
            if role.value not in values:
                values.append(role.value)
        self.roles = values
        if self.current_role not in values:
            self.current_role = values[0] if values else None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "roles": list(self.roles or []),
            "current_role": self.current_role,
            "school": self.school,
            "region": self.region,
            "county": self.county,
            "sub_county": self.sub_county,
            "zone": self.zone,
            "work_region": self.work_region,
            "work_county": self.work_county,
            "work_sub_county": self.work_sub_county,
            "coordinated_category": self.coordinated_category,
        }
