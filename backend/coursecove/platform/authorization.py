"""
Staged authorization pipeline for API procedures.

Every procedure declares a Pipeline: an ordered list of stages, each a
function of the form ProcedureContext -> ProcedureContext that either
returns an extended context or raises a CourseCoveError.

Escalation stages must appear in this exact order, without gaps:

    Public -> Authenticated -> OrgScoped -> Staff -> Admin

Predicate stages (role allow-lists, rate limits) may follow once their
prerequisite escalation stage is in place. Ordering is validated when the
pipeline is built, so a misdeclared procedure fails at import time rather
than at request time.

Stages only ever add to the context. ProcedureContext.extend refuses to
overwrite a field that an earlier stage already set.

Usage:
    admin_delete = (
        Pipeline.builder()
        .up_to(StageLevel.ADMIN)
        .rate_limit("memberships.remove", "DELETE")
        .build()
    )

    @router.post("/{membership_id}/remove")
    def remove(ctx: ProcedureContext = Depends(procedure(admin_delete))):
        ...
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from enum import IntEnum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from coursecove.config.rate_limits import get_rate_limit_profiles
from coursecove.config.settings import get_settings
from coursecove.database.session import get_db_session
from coursecove.database.tenant_scope import apply_tenant_scope
from coursecove.models.membership import Membership, MembershipRole
from coursecove.models.organization import Organization
from coursecove.models.user import User
from coursecove.platform.errors import (
    InsufficientRole,
    MissingTenantContext,
    RateLimited,
    Unauthenticated,
)
from coursecove.platform.rate_limit import RateLimiter, get_rate_limiter, rate_limit_key
from coursecove.platform.session_resolver import SessionIdentity, get_session

logger = logging.getLogger(__name__)


class StageLevel(IntEnum):
    PUBLIC = 0
    AUTHENTICATED = 1
    ORG_SCOPED = 2
    STAFF = 3
    ADMIN = 4


class PipelineConfigurationError(Exception):
    """A pipeline was declared with stages out of order."""


class ContextOverrideError(Exception):
    """A stage tried to replace a field set by an earlier stage."""


@dataclass(frozen=True)
class ResolvedTenant:
    """Result of resolving a Clerk org id against the local store."""
    organization: Optional[Organization]
    user: Optional[User]
    membership: Optional[Membership]


@dataclass(frozen=True)
class ProcedureContext:
    """
    Context threaded through the stages of one procedure call.

    session is set up front; every other field is filled in by the stage
    that verifies it.
    """
    session: SessionIdentity
    db: Optional[Session] = field(default=None, compare=False)
    cache: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    passed: Tuple[str, ...] = ()

    user_id: Optional[str] = None
    org_id: Optional[str] = None
    organization: Optional[Organization] = field(default=None, compare=False)
    user: Optional[User] = field(default=None, compare=False)
    membership: Optional[Membership] = field(default=None, compare=False)
    org_role: Optional[str] = None
    is_admin: bool = False

    @property
    def organization_id(self) -> Optional[str]:
        """Internal organization id, available after OrgScoped."""
        return self.organization.id if self.organization is not None else None

    @property
    def membership_role(self) -> Optional[MembershipRole]:
        if self.membership is None or not self.membership.is_active:
            return None
        return MembershipRole(self.membership.role)

    def extend(self, stage: str, **updates: Any) -> "ProcedureContext":
        for name, value in updates.items():
            current = getattr(self, name)
            if current not in (None, False) and current is not value and current != value:
                raise ContextOverrideError(
                    f"Stage {stage} attempted to override {name}"
                )
        return replace(self, passed=self.passed + (stage,), **updates)


# =============================================================================
# Stages
# =============================================================================


class Stage(ABC):
    """One guard in the pipeline."""

    name: str = "stage"
    # Escalation level this stage establishes (escalation stages only)
    level: Optional[StageLevel] = None
    # Escalation level that must already be in the pipeline (predicate stages)
    requires: StageLevel = StageLevel.PUBLIC

    @abstractmethod
    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        """Return the extended context or raise a CourseCoveError."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class PublicStage(Stage):
    name = "public"
    level = StageLevel.PUBLIC

    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        return ctx.extend(self.name)


class AuthenticatedStage(Stage):
    name = "authenticated"
    level = StageLevel.AUTHENTICATED

    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        if ctx.session.user_id is None:
            raise Unauthenticated()
        return ctx.extend(self.name, user_id=ctx.session.user_id)


def resolve_tenant(db: Session, clerk_org_id: str, clerk_user_id: str) -> ResolvedTenant:
    organization = db.query(Organization).filter(
        Organization.clerk_org_id == clerk_org_id,
    ).first()
    user = db.query(User).filter(User.clerk_user_id == clerk_user_id).first()

    membership = None
    if organization is not None and user is not None:
        membership = db.query(Membership).filter(
            Membership.organization_id == organization.id,
            Membership.user_id == user.id,
        ).first()

    return ResolvedTenant(organization=organization, user=user, membership=membership)


def resolve_tenant_cached(
    cache: Dict[str, Any],
    db: Session,
    clerk_org_id: str,
    clerk_user_id: str,
) -> ResolvedTenant:
    """Per-request memoized resolve_tenant."""
    key = f"tenant:{clerk_org_id}:{clerk_user_id}"
    resolved = cache.get(key)
    if resolved is None:
        resolved = resolve_tenant(db, clerk_org_id, clerk_user_id)
        cache[key] = resolved
    return resolved


class OrgScopedStage(Stage):
    """
    Requires an active organization in the session.

    Resolves the Clerk org id to the local Organization (and the caller's
    Membership), then scopes the database session for row-level policies.
    """

    name = "org_scoped"
    level = StageLevel.ORG_SCOPED

    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        org_id = ctx.session.org_id
        if org_id is None:
            raise MissingTenantContext()
        if ctx.db is None:
            raise RuntimeError("OrgScoped stage requires a database session")

        resolved = resolve_tenant_cached(ctx.cache, ctx.db, org_id, ctx.user_id)
        organization = resolved.organization
        if organization is None or not organization.is_active:
            logger.warning(
                "Organization not provisioned locally",
                extra={"clerk_org_id": org_id, "clerk_user_id": ctx.user_id},
            )
            raise MissingTenantContext("Your organization is not available")

        apply_tenant_scope(ctx.db, clerk_user_id=ctx.user_id, org_id=organization.id)

        return ctx.extend(
            self.name,
            org_id=org_id,
            organization=organization,
            user=resolved.user,
            membership=resolved.membership,
        )


class StaffStage(Stage):
    name = "staff"
    level = StageLevel.STAFF

    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        if ctx.session.org_role is None:
            raise InsufficientRole("Staff access required")
        return ctx.extend(self.name, org_role=ctx.session.org_role)


class AdminStage(Stage):
    name = "admin"
    level = StageLevel.ADMIN

    def __init__(self, admin_roles: Optional[Iterable[str]] = None):
        self._admin_roles = frozenset(admin_roles) if admin_roles is not None else None

    @property
    def admin_roles(self) -> FrozenSet[str]:
        if self._admin_roles is not None:
            return self._admin_roles
        return frozenset(get_settings().admin_roles)

    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        if ctx.org_role not in self.admin_roles:
            raise InsufficientRole("Admin access required")
        return ctx.extend(self.name, is_admin=True)


class RequireRolesStage(Stage):
    """Allow-list of local membership roles (e.g., instructor-capable roles)."""

    requires = StageLevel.ORG_SCOPED

    def __init__(self, allowed: Iterable[MembershipRole]):
        self.allowed = frozenset(allowed)
        if not self.allowed:
            raise PipelineConfigurationError("RequireRolesStage needs at least one role")
        self.name = "roles:" + ",".join(sorted(r.value for r in self.allowed))

    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        role = ctx.membership_role
        if role is None or role not in self.allowed:
            raise InsufficientRole(
                "This action requires one of the following roles: "
                + ", ".join(sorted(r.value for r in self.allowed))
            )
        return ctx.extend(self.name)


class RateLimitStage(Stage):
    """Counts the call against the caller's quota for this action."""

    requires = StageLevel.AUTHENTICATED

    def __init__(
        self,
        action: str,
        action_class: str = "MUTATION",
        limiter: Optional[RateLimiter] = None,
    ):
        self.action = action
        self.action_class = action_class.upper()
        self._limiter = limiter
        self.name = f"rate_limit:{action}"

    def apply(self, ctx: ProcedureContext) -> ProcedureContext:
        limiter = self._limiter or get_rate_limiter()
        config = get_rate_limit_profiles().get(self.action_class)
        result = limiter.check(rate_limit_key(ctx.user_id, self.action), config)
        if not result.success:
            raise RateLimited(retry_after=result.retry_after_seconds(limiter.clock()))
        return ctx.extend(self.name)


# =============================================================================
# Pipeline
# =============================================================================


_ESCALATION: Dict[StageLevel, Callable[[], Stage]] = {
    StageLevel.PUBLIC: PublicStage,
    StageLevel.AUTHENTICATED: AuthenticatedStage,
    StageLevel.ORG_SCOPED: OrgScopedStage,
    StageLevel.STAFF: StaffStage,
    StageLevel.ADMIN: AdminStage,
}


class Pipeline:
    """An ordered, validated sequence of stages."""

    def __init__(self, stages: Iterable[Stage]):
        self.stages: Tuple[Stage, ...] = tuple(stages)
        self.level = self._validate(self.stages)

    @staticmethod
    def _validate(stages: Tuple[Stage, ...]) -> StageLevel:
        if not stages or stages[0].level is not StageLevel.PUBLIC:
            raise PipelineConfigurationError("Pipeline must start with the Public stage")

        reached = StageLevel.PUBLIC
        for stage in stages[1:]:
            if stage.level is not None:
                if stage.level != reached + 1:
                    raise PipelineConfigurationError(
                        f"{stage.name} cannot follow {StageLevel(reached).name.lower()}"
                    )
                reached = stage.level
            elif stage.requires > reached:
                raise PipelineConfigurationError(
                    f"{stage.name} requires {stage.requires.name.lower()} earlier in the pipeline"
                )
        return StageLevel(reached)

    @classmethod
    def builder(cls) -> "PipelineBuilder":
        return PipelineBuilder()

    def ensure_level(self, required: StageLevel) -> "Pipeline":
        """Raise unless this pipeline reaches the required escalation level."""
        if self.level < required:
            raise PipelineConfigurationError(
                f"Pipeline reaches {self.level.name.lower()}, procedure requires {required.name.lower()}"
            )
        return self

    def run(self, ctx: ProcedureContext) -> ProcedureContext:
        for stage in self.stages:
            ctx = stage.apply(ctx)
        return ctx

    def __repr__(self) -> str:
        return f"<Pipeline {' -> '.join(s.name for s in self.stages)}>"


class PipelineBuilder:
    """Immutable builder; every call returns a new builder."""

    def __init__(self, stages: Tuple[Stage, ...] = ()):
        self._stages = stages

    def _add(self, stage: Stage) -> "PipelineBuilder":
        return PipelineBuilder(self._stages + (stage,))

    def public(self) -> "PipelineBuilder":
        return self._add(PublicStage())

    def authenticated(self) -> "PipelineBuilder":
        return self._add(AuthenticatedStage())

    def org_scoped(self) -> "PipelineBuilder":
        return self._add(OrgScopedStage())

    def staff(self) -> "PipelineBuilder":
        return self._add(StaffStage())

    def admin(self, admin_roles: Optional[Iterable[str]] = None) -> "PipelineBuilder":
        return self._add(AdminStage(admin_roles))

    def up_to(self, level: StageLevel) -> "PipelineBuilder":
        """Append every escalation stage from Public through level."""
        builder = self
        for step in StageLevel:
            if step > level:
                break
            builder = builder._add(_ESCALATION[step]())
        return builder

    def roles(self, allowed: Iterable[MembershipRole]) -> "PipelineBuilder":
        return self._add(RequireRolesStage(allowed))

    def rate_limit(
        self,
        action: str,
        action_class: str = "MUTATION",
        limiter: Optional[RateLimiter] = None,
    ) -> "PipelineBuilder":
        return self._add(RateLimitStage(action, action_class, limiter))

    def stage(self, stage: Stage) -> "PipelineBuilder":
        return self._add(stage)

    def build(self) -> Pipeline:
        return Pipeline(self._stages)


PUBLIC = Pipeline.builder().up_to(StageLevel.PUBLIC).build()
AUTHENTICATED = Pipeline.builder().up_to(StageLevel.AUTHENTICATED).build()
ORG_SCOPED = Pipeline.builder().up_to(StageLevel.ORG_SCOPED).build()
STAFF = Pipeline.builder().up_to(StageLevel.STAFF).build()
ADMIN = Pipeline.builder().up_to(StageLevel.ADMIN).build()


# =============================================================================
# FastAPI integration
# =============================================================================


def get_request_cache(request: Request) -> Dict[str, Any]:
    cache = getattr(request.state, "auth_cache", None)
    if cache is None:
        cache = {}
        request.state.auth_cache = cache
    return cache


def build_context(request: Request, db: Optional[Session]) -> ProcedureContext:
    """
    Initial context for a request.

    Resets the row-level session variables so a pooled connection never
    carries a previous caller's tenant into this transaction.
    """
    identity = get_session(request)
    if db is not None:
        apply_tenant_scope(db, clerk_user_id=identity.user_id, org_id=None)
    return ProcedureContext(session=identity, db=db, cache=get_request_cache(request))


def procedure(pipeline: Pipeline, requires: Optional[StageLevel] = None):
    """
    FastAPI dependency factory running a pipeline for the current request.

    `requires` is checked immediately, at declaration time.
    """
    if requires is not None:
        pipeline.ensure_level(requires)

    def dependency(request: Request, db: Session = Depends(get_db_session)) -> ProcedureContext:
        ctx = build_context(request, db)
        return pipeline.run(ctx)

    dependency.pipeline = pipeline
    return dependency
