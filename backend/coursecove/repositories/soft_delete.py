"""
Tenant-scoped repositories for soft-deletable entity families.

There is no implicit query filter for deleted rows. Every read takes an
explicit include_deleted flag, so a call site can neither forget the
filter nor apply it twice.

CRITICAL: organization_id comes from the resolved tenant context, never
from request input.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from coursecove.db_base import Base
from coursecove.models.appointment import Appointment
from coursecove.models.appointment_type import AppointmentType
from coursecove.models.base import utcnow
from coursecove.platform.errors import NotFound, RestrictedDelete

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)


class TenantIsolationError(Exception):
    """Raised when an entity is created or updated for another tenant."""


class SoftDeleteRepository(Generic[T], ABC):
    """
    Base repository: tenant scoping plus explicit soft-delete handling.

    Methods flush; the caller owns the transaction.
    """

    def __init__(self, db_session: Session, organization_id: str):
        if not organization_id:
            raise ValueError("organization_id is required and cannot be empty")
        self.db = db_session
        self.organization_id = organization_id
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> Type[T]:
        """Return the SQLAlchemy model class for this repository."""

    def _query(self, include_deleted: bool) -> Query:
        model = self._model_class
        query = self.db.query(model).filter(model.organization_id == self.organization_id)
        if not include_deleted:
            query = query.filter(model.deleted_at.is_(None))
        return query

    def get(self, entity_id: str, include_deleted: bool) -> Optional[T]:
        return self._query(include_deleted).filter(self._model_class.id == entity_id).first()

    def get_or_404(self, entity_id: str, include_deleted: bool) -> T:
        entity = self.get(entity_id, include_deleted=include_deleted)
        if entity is None:
            raise NotFound(f"{self._model_class.__name__} not found")
        return entity

    def list(
        self,
        include_deleted: bool,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[T]:
        query = self._query(include_deleted).order_by(self._model_class.created_at.asc())
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def count(self, include_deleted: bool) -> int:
        return self._query(include_deleted).count()

    def create(self, **values) -> T:
        """Create an entity owned by this repository's organization."""
        provided = values.pop("organization_id", None)
        if provided is not None and provided != self.organization_id:
            raise TenantIsolationError(
                f"Repository scoped to {self.organization_id}, create attempted for {provided}"
            )
        entity = self._model_class(organization_id=self.organization_id, **values)
        self.db.add(entity)
        self.db.flush()
        logger.info(
            "Entity created",
            extra={
                "organization_id": self.organization_id,
                "entity_id": entity.id,
                "entity_type": self._model_class.__name__,
            },
        )
        return entity

    def soft_delete(self, entity_id: str) -> T:
        """Set deleted_at. Already-deleted entities are returned unchanged."""
        entity = self.get_or_404(entity_id, include_deleted=True)
        if entity.deleted_at is None:
            entity.deleted_at = utcnow()
            self.db.flush()
            logger.info(
                "Entity soft deleted",
                extra={"entity_id": entity_id, "entity_type": self._model_class.__name__},
            )
        return entity

    def restore(self, entity_id: str) -> T:
        entity = self.get_or_404(entity_id, include_deleted=True)
        if entity.deleted_at is not None:
            entity.deleted_at = None
            self.db.flush()
            logger.info(
                "Entity restored",
                extra={"entity_id": entity_id, "entity_type": self._model_class.__name__},
            )
        return entity


class AppointmentTypeRepository(SoftDeleteRepository[AppointmentType]):
    def _get_model_class(self) -> Type[AppointmentType]:
        return AppointmentType


class AppointmentRepository(SoftDeleteRepository[Appointment]):
    def _get_model_class(self) -> Type[Appointment]:
        return Appointment


def appointment_type_blockers(db: Session, appointment_type: AppointmentType) -> int:
    """Appointments referencing the type; they RESTRICT deletion."""
    return db.query(Appointment).filter(
        Appointment.appointment_type_id == appointment_type.id
    ).count()


def purge_deleted_before(
    db: Session,
    model: Type[T],
    cutoff: datetime,
    blockers: Optional[Callable[[Session, T], int]] = None,
) -> Dict[str, int]:
    """
    Hard delete rows of ``model`` soft-deleted before ``cutoff``, across tenants.

    Each row runs in its own savepoint. Rows with blockers, or rejected by
    a foreign key, are skipped and logged.

    Returns:
        {"deleted": n, "total": candidates}
    """
    candidate_ids = [
        row.id for row in db.query(model.id).filter(
            model.deleted_at.isnot(None),
            model.deleted_at < cutoff,
        ).all()
    ]
    deleted = 0

    for entity_id in candidate_ids:
        savepoint = db.begin_nested()
        try:
            entity = db.get(model, entity_id)
            if entity is None:
                savepoint.rollback()
                continue
            blocked = blockers(db, entity) if blockers else 0
            if blocked:
                raise RestrictedDelete(blocked_count=blocked)
            db.delete(entity)
            db.flush()
            savepoint.commit()
            deleted += 1
        except (RestrictedDelete, IntegrityError) as exc:
            savepoint.rollback()
            logger.warning(
                "Skipping purge of soft-deleted row",
                extra={
                    "table": model.__tablename__,
                    "entity_id": entity_id,
                    "error": str(exc),
                },
            )

    db.commit()
    logger.info(
        "Soft-delete purge finished",
        extra={"table": model.__tablename__, "deleted": deleted, "total": len(candidate_ids)},
    )
    return {"deleted": deleted, "total": len(candidate_ids)}
