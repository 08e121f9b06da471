"""
Assignment Allocator: assigns judges and coordinators to category sections.

A judge is assigned to one section ("Part A" or "Part B & C") of every
active project of a category at a level. Holding both sections of a category
makes the judge its Coordinator. Every rule is checked before the first write;
a rejected call leaves the store untouched and returns the reason.

Check order:
1. jurisdiction (admin's work scope vs the judge's work geography)
2. admin capability for the level
3. conflict with the judge's own admin jurisdiction
4. prior-level judging of the same category
5. active projects exist
6. coordinator / exclusivity / capacity rules
"""
import logging
from typing import Dict, List, Optional, Set

from scifair.config.engine_settings import EngineSettings
from scifair.errors import ErrorCode, ErrorKind, OperationResult
from scifair.orm.competition import ALL_SECTIONS, CATEGORIES, CompetitionLevel, Section
from scifair.orm.judge_assignment import JudgeAssignment
from scifair.orm.project import Project
from scifair.orm.user import User, UserRole
from scifair.rbac import (
    acting_admin_role,
    admin_scope,
    can_manage_level,
    check_assignment_permission,
    is_super_admin,
    judge_admin_level,
)
from scifair.services.assignment_store import AssignmentStore
from scifair.services.audit_service import AuditEvent, AuditService
from scifair.services.scoped_locks import (
    ScopedLocks,
    allocation_scope,
    cohort_scope,
    engine_locks,
    judge_level_scope,
)

logger = logging.getLogger(__name__)


def _fail(kind: ErrorKind, code: str, message: str, **details) -> OperationResult:
    return OperationResult.fail(kind, message, code, **details)


def _invariant(code: str, message: str, **details) -> OperationResult:
    return _fail(ErrorKind.INVARIANT_VIOLATION, code, message, **details)


class AssignmentAllocator:
    """Creates and removes judge assignments under the allocation invariants."""

    MAX_REGULAR_JUDGES_PER_SECTION = 2

    def __init__(
        self,
        store: AssignmentStore,
        settings: EngineSettings,
        audit: Optional[AuditService] = None,
        locks: Optional[ScopedLocks] = None,
    ):
        self.store = store
        self.settings = settings
        self.audit = audit or AuditService(store)
        self.locks = locks or engine_locks

    # =========================================================================
    # Shared checks
    # =========================================================================

    @staticmethod
    def _validate_inputs(category: str, section: Optional[str]) -> Optional[OperationResult]:
        if category not in CATEGORIES:
            return _fail(
                ErrorKind.VALIDATION_ERROR, ErrorCode.INVALID_INPUT,
                f"Unknown category '{category}'.", field="category"
            )
        if section is not None and section not in [s.value for s in ALL_SECTIONS]:
            return _fail(
                ErrorKind.VALIDATION_ERROR, ErrorCode.INVALID_INPUT,
                f"Unknown section '{section}'.", field="section"
            )
        return None

    def _check_authority(self, admin: User, judge: User, level: CompetitionLevel) -> Optional[OperationResult]:
        allowed, reason = check_assignment_permission(admin, judge)
        if not allowed:
            return _invariant(ErrorCode.JURISDICTION_MISMATCH, reason)
        if not can_manage_level(admin, level):
            role = acting_admin_role(admin)
            role_name = role.value if role else "user"
            return _invariant(
                ErrorCode.LEVEL_NOT_PERMITTED,
                f"A {role_name} cannot manage judging at the {level.value} level."
            )
        return None

    async def _check_judge_eligibility(
        self,
        judge: User,
        category: str,
        level: CompetitionLevel,
        projects: List[Project],
    ) -> Optional[OperationResult]:
        admin_level = judge_admin_level(judge)
        if admin_level is not None and level <= admin_level and not judge.has_role(UserRole.SUPER_ADMIN):
            own_scope = admin_scope(judge)
            if any(own_scope.contains(p) for p in projects):
                return _invariant(
                    ErrorCode.ADMIN_JURISDICTION_CONFLICT,
                    f"Cannot assign {judge.name}. As a {judge.highest_admin_role().value} they cannot "
                    f"judge projects within their own jurisdiction at the {level.value} level."
                )

        judged_before = await self.store.prior_level_categories(judge.id, level)
        if category in judged_before:
            return _invariant(
                ErrorCode.PRIOR_LEVEL_CONFLICT,
                f"Cannot assign {judge.name}. They judged '{category}' at the "
                f"{judged_before[category].value} level and cannot judge it again at a higher level."
            )
        return None

    async def _load(self, admin: User, judge_id: int, category: str, section: Optional[str],
                    level: CompetitionLevel):
        invalid = self._validate_inputs(category, section)
        if invalid:
            return None, invalid
        judge = await self.store.get_user(judge_id, lock=True)
        if judge is None:
            return None, _fail(ErrorKind.NOT_FOUND, ErrorCode.JUDGE_NOT_FOUND, f"Judge {judge_id} not found.")
        denied = self._check_authority(admin, judge, level)
        if denied:
            return None, denied
        return judge, None

    def _lock_keys(self, judge_id: int, category: str, level: CompetitionLevel):
        return (
            allocation_scope(judge_id, category, level),
            judge_level_scope(judge_id, level),
            cohort_scope(category, level),
        )

    # =========================================================================
    # Role sync
    # =========================================================================

    @staticmethod
    def _promote(judge: User, category: str) -> None:
        roles = [r for r in judge.role_set() if r != UserRole.JUDGE]
        roles.append(UserRole.COORDINATOR)
        judge.set_roles(roles)
        judge.coordinated_category = category
        judge.current_role = UserRole.COORDINATOR.value

    @staticmethod
    def _demote(judge: User) -> None:
        roles = [r for r in judge.role_set() if r != UserRole.COORDINATOR]
        if not judge.admin_roles() and UserRole.JUDGE not in roles:
            roles.append(UserRole.JUDGE)
        judge.set_roles(roles)
        judge.coordinated_category = None

    @staticmethod
    def _ensure_judge_role(judge: User) -> None:
        if not judge.has_role(UserRole.JUDGE) and not judge.has_role(UserRole.COORDINATOR):
            judge.set_roles(judge.role_set() + [UserRole.JUDGE])

    # =========================================================================
    # Assign
    # =========================================================================

    async def assign(
        self,
        admin: User,
        judge_id: int,
        category: str,
        section: str,
        level: CompetitionLevel,
    ) -> OperationResult:
        """
        Assign a judge to one section of every active project in a category.

        Assigning the second section of a category promotes the judge to
        Coordinator, subject to the coordinator rules.
        """
        async with self.locks.hold(*self._lock_keys(judge_id, category, level)):
            judge, failure = await self._load(admin, judge_id, category, section, level)
            if failure:
                await self.store.release()
                return failure

            result = await self._assign_locked(admin, judge, category, Section(section), level)
            if not result.success:
                await self.store.release()
                return result

        promoted = result.details.get("promoted", False)
        await self.audit.emit(
            AuditEvent.COORDINATOR_PROMOTED if promoted else AuditEvent.ASSIGNMENT_CREATED,
            result.message,
            performing_admin_id=admin.id,
            scope=admin_scope(admin),
            level=level,
            category=category,
            target_user_id=judge.id,
            notified_admin_role=admin.current_role,
        )
        return result

    async def _assign_locked(
        self,
        admin: User,
        judge: User,
        category: str,
        section: Section,
        level: CompetitionLevel,
    ) -> OperationResult:
        projects = await self.store.cohort_projects(level, scope=admin_scope(admin), category=category)

        ineligible = await self._check_judge_eligibility(judge, category, level, projects)
        if ineligible:
            return ineligible

        if not projects:
            return _invariant(
                ErrorCode.NO_ACTIVE_PROJECTS,
                f"No active projects found in '{category}' for the {level.value} level."
            )

        held = await self.store.judge_sections(judge.id, level)
        for other_category, sections in held.items():
            if len(sections) == len(ALL_SECTIONS):
                return _invariant(
                    ErrorCode.ALREADY_COORDINATOR,
                    f"Cannot assign new roles. This user is already the Coordinator for "
                    f"'{other_category}' at this level."
                )

        in_category = held.get(category, set())
        if section in in_category:
            return _invariant(
                ErrorCode.DUPLICATE_ASSIGNMENT,
                f"{judge.name} is already assigned to {section.value} in '{category}' at this level."
            )

        promoting = bool(in_category)
        if promoting:
            failure = await self._check_promotion(judge, category, level, held)
        else:
            failure = await self._check_regular(judge, category, section, level, projects, held)
        if failure:
            return failure

        created = 0
        for project in projects:
            if await self.store.find_active(judge.id, project.id, section, level) is not None:
                continue
            self.store.add(JudgeAssignment(
                judge_id=judge.id,
                project_id=project.id,
                category=category,
                section=section.value,
                competition_level=level.value,
            ))
            created += 1

        if promoting:
            self._promote(judge, category)
            message = f"{judge.name} is now the Coordinator for '{category}' at the {level.value} level."
        else:
            self._ensure_judge_role(judge)
            message = f"Assigned to {section.value} for '{category}' successfully."

        await self.store.commit()
        logger.info(
            f"Admin {admin.id} assigned judge {judge.id} to {section.value} "
            f"in '{category}' at {level.value} ({created} projects, promoted={promoting})"
        )
        return OperationResult.ok(message, data={"created": created}, promoted=promoting)

    async def _check_promotion(
        self,
        judge: User,
        category: str,
        level: CompetitionLevel,
        held: Dict[str, Set[Section]],
    ) -> Optional[OperationResult]:
        others = sorted(c for c in held if c != category)
        if others:
            return _invariant(
                ErrorCode.COORDINATOR_HAS_OTHER_ASSIGNMENTS,
                f"Cannot make {judge.name} a Coordinator for '{category}'. They also have assignments in "
                f"'{others[0]}' at this level. A Coordinator cannot hold assignments in other categories.",
                other_categories=others,
            )
        return await self._check_no_other_coordinator(judge, category, level)

    async def _check_no_other_coordinator(
        self,
        judge: User,
        category: str,
        level: CompetitionLevel,
    ) -> Optional[OperationResult]:
        existing = (await self.store.coordinator_ids(category, level)) - {judge.id}
        if existing:
            users = await self.store.users_by_ids(existing)
            name = next(iter(users.values())).name if users else "Another user"
            return _invariant(
                ErrorCode.COORDINATOR_EXISTS,
                f"Cannot assign coordinator. '{name}' is already coordinating the "
                f"'{category}' category for this level."
            )
        return None

    async def _check_regular(
        self,
        judge: User,
        category: str,
        section: Section,
        level: CompetitionLevel,
        projects: List[Project],
        held: Dict[str, Set[Section]],
    ) -> Optional[OperationResult]:
        for other_category, sections in sorted(held.items()):
            if other_category != category and section in sections:
                return _invariant(
                    ErrorCode.SECTION_ALREADY_HELD,
                    f"Cannot assign. This judge is already assigned to {section.value} in the "
                    f"'{other_category}' category. A judge cannot be assigned the same section "
                    f"across different categories."
                )

        coordinators = await self.store.coordinator_ids(category, level)
        rows = await self.store.active_assignments(
            level, category=category, section=section, project_ids=[p.id for p in projects]
        )
        regular_by_project: Dict[int, List[int]] = {}
        for a in rows:
            if a.judge_id not in coordinators:
                regular_by_project.setdefault(a.project_id, []).append(a.judge_id)

        for project in projects:
            incumbents = regular_by_project.get(project.id, [])
            if len(incumbents) >= self.MAX_REGULAR_JUDGES_PER_SECTION:
                users = await self.store.users_by_ids(incumbents)
                names = ", ".join(users[i].name for i in incumbents if i in users)
                return _invariant(
                    ErrorCode.SECTION_CAPACITY_EXCEEDED,
                    f'Cannot assign judge. Project "{project.title}" for {section.value} is already '
                    f'fully assigned to: {names}. A maximum of {self.MAX_REGULAR_JUDGES_PER_SECTION} '
                    f'regular judges are allowed.',
                    project_id=project.id,
                    incumbents=[users[i].name for i in incumbents if i in users],
                )
        return None

    async def assign_coordinator(
        self,
        admin: User,
        judge_id: int,
        category: str,
        level: CompetitionLevel,
    ) -> OperationResult:
        """Make a judge with no assignments at `level` the Coordinator of `category` (both sections)."""
        async with self.locks.hold(*self._lock_keys(judge_id, category, level)):
            judge, failure = await self._load(admin, judge_id, category, None, level)
            if failure:
                await self.store.release()
                return failure

            result = await self._assign_coordinator_locked(admin, judge, category, level)
            if not result.success:
                await self.store.release()
                return result

        await self.audit.emit(
            AuditEvent.COORDINATOR_PROMOTED,
            result.message,
            performing_admin_id=admin.id,
            scope=admin_scope(admin),
            level=level,
            category=category,
            target_user_id=judge.id,
            notified_admin_role=admin.current_role,
        )
        return result

    async def _assign_coordinator_locked(
        self,
        admin: User,
        judge: User,
        category: str,
        level: CompetitionLevel,
    ) -> OperationResult:
        projects = await self.store.cohort_projects(level, scope=admin_scope(admin), category=category)

        ineligible = await self._check_judge_eligibility(judge, category, level, projects)
        if ineligible:
            return ineligible
        if not projects:
            return _invariant(
                ErrorCode.NO_ACTIVE_PROJECTS,
                f"No active projects found in '{category}' for the {level.value} level."
            )

        held = await self.store.judge_sections(judge.id, level)
        for other_category, sections in held.items():
            if len(sections) == len(ALL_SECTIONS):
                return _invariant(
                    ErrorCode.ALREADY_COORDINATOR,
                    f"Cannot assign new roles. This user is already the Coordinator for "
                    f"'{other_category}' at this level."
                )
        if held:
            return _invariant(
                ErrorCode.COORDINATOR_HAS_OTHER_ASSIGNMENTS,
                "This user already has judging assignments. To make them a Coordinator, please "
                "remove all their current assignments for this level first."
            )

        failure = await self._check_no_other_coordinator(judge, category, level)
        if failure:
            return failure

        for project in projects:
            for section in ALL_SECTIONS:
                self.store.add(JudgeAssignment(
                    judge_id=judge.id,
                    project_id=project.id,
                    category=category,
                    section=section.value,
                    competition_level=level.value,
                ))
        self._promote(judge, category)
        await self.store.commit()

        logger.info(f"Admin {admin.id} made judge {judge.id} Coordinator of '{category}' at {level.value}")
        return OperationResult.ok(
            f"{judge.name} is now the Coordinator for '{category}' at the {level.value} level.",
            data={"created": len(projects) * len(ALL_SECTIONS)},
            promoted=True,
        )

    # =========================================================================
    # Unassign
    # =========================================================================

    async def unassign(
        self,
        admin: User,
        judge_id: int,
        category: str,
        section: str,
        level: CompetitionLevel,
    ) -> OperationResult:
        """Remove a judge from one section of a category at a level."""
        invalid = self._validate_inputs(category, section)
        if invalid:
            return invalid
        return await self._unassign(admin, judge_id, category, [Section(section)], level)

    async def unassign_category(
        self,
        admin: User,
        judge_id: int,
        category: str,
        level: CompetitionLevel,
    ) -> OperationResult:
        """Remove a judge (or coordinator) from every section they hold in a category."""
        invalid = self._validate_inputs(category, None)
        if invalid:
            return invalid
        held = await self.store.judge_sections(judge_id, level)
        sections = sorted(held.get(category, set()), key=lambda s: s.value)
        if not sections:
            sections = list(ALL_SECTIONS)
        return await self._unassign(admin, judge_id, category, sections, level)

    async def _unassign(
        self,
        admin: User,
        judge_id: int,
        category: str,
        sections: List[Section],
        level: CompetitionLevel,
    ) -> OperationResult:
        async with self.locks.hold(*self._lock_keys(judge_id, category, level)):
            judge, failure = await self._load(admin, judge_id, category, None, level)
            if failure:
                await self.store.release()
                return failure

            rows: List[JudgeAssignment] = []
            for section in sections:
                rows.extend(await self.store.active_assignments(
                    level, category=category, judge_id=judge.id, section=section, lock=True
                ))
            section_names = " and ".join(s.value for s in sections)
            if not rows:
                await self.store.release()
                return _fail(
                    ErrorKind.NOT_FOUND, ErrorCode.NOT_ASSIGNED,
                    f"{judge.name} is not assigned to {section_names} in '{category}' at this level."
                )

            if any(a.has_submitted_score for a in rows) and not is_super_admin(admin):
                await self.store.release()
                return _invariant(
                    ErrorCode.SUPER_ADMIN_REQUIRED,
                    f"Cannot unassign. {judge.name} has already submitted scores for {section_names} "
                    f"in '{category}'. Only a Super Admin can perform this action.",
                    scored_assignment_ids=[a.id for a in rows if a.has_submitted_score],
                )

            was_coordinator = judge.id in await self.store.coordinator_ids(category, level)
            if was_coordinator:
                blocked = await self._check_demotion_capacity(judge, category, sections, level)
                if blocked:
                    await self.store.release()
                    return blocked

            for a in rows:
                await self.store.db.delete(a)
            if was_coordinator:
                self._demote(judge)
            await self.store.commit()

        message = f"Unassigned from {section_names} for '{category}' at {level.value} level."
        logger.info(f"Admin {admin.id} unassigned judge {judge.id}: {message} ({len(rows)} rows)")

        await self.audit.emit(
            AuditEvent.COORDINATOR_DEMOTED if was_coordinator else AuditEvent.ASSIGNMENT_REMOVED,
            message,
            performing_admin_id=admin.id,
            scope=admin_scope(admin),
            level=level,
            category=category,
            target_user_id=judge.id,
            notified_admin_role=admin.current_role,
        )
        return OperationResult.ok(message, data={"removed": len(rows)}, demoted=was_coordinator)

    async def _check_demotion_capacity(
        self,
        judge: User,
        category: str,
        removed: List[Section],
        level: CompetitionLevel,
    ) -> Optional[OperationResult]:
        """
        A coordinator dropping one section becomes a regular judge on the other,
        so every project section they keep must still have room for them.
        """
        kept = [s for s in ALL_SECTIONS if s not in removed]
        for section in kept:
            rows = await self.store.active_assignments(level, category=category, section=section)
            projects = sorted({a.project_id for a in rows if a.judge_id == judge.id})
            regular_by_project: Dict[int, List[int]] = {}
            for a in rows:
                if a.judge_id != judge.id:
                    regular_by_project.setdefault(a.project_id, []).append(a.judge_id)

            for project_id in projects:
                incumbents = regular_by_project.get(project_id, [])
                if len(incumbents) >= self.MAX_REGULAR_JUDGES_PER_SECTION:
                    project = await self.store.get_project(project_id)
                    users = await self.store.users_by_ids(incumbents)
                    names = [users[i].name for i in incumbents if i in users]
                    return _invariant(
                        ErrorCode.SECTION_CAPACITY_EXCEEDED,
                        f'Cannot unassign. {judge.name} would stay on {section.value} of "{project.title}" '
                        f'as a regular judge, but it is already fully assigned to: {", ".join(names)}. '
                        f'Remove the coordinator from the whole category instead.',
                        project_id=project_id,
                        incumbents=names,
                    )
        return None
