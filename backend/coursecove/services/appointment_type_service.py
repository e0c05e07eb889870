"""
Appointment type management within one organization.

Updates use optimistic locking: the caller sends the version it read,
and the row is only written if that version is still current.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from coursecove.models.appointment_type import AppointmentType, AppointmentTypeStatus
from coursecove.models.instructor import AppointmentTypeInstructor
from coursecove.models.membership import (
    INSTRUCTOR_CAPABLE_ROLES,
    Membership,
    MembershipRole,
    MembershipStatus,
)
from coursecove.platform.errors import Conflict, NotFound, ValidationFailed
from coursecove.repositories.soft_delete import AppointmentTypeRepository

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "duration",
    "status",
    "default_is_online",
    "default_address",
    "default_video_link",
})


def _validate_fields(values: Dict[str, Any]) -> None:
    if "name" in values and not (values["name"] or "").strip():
        raise ValidationFailed("Name is required")
    if "duration" in values:
        duration = values["duration"]
        if not isinstance(duration, int) or duration <= 0:
            raise ValidationFailed("Duration must be a positive number of minutes")
    if "status" in values:
        try:
            AppointmentTypeStatus(values["status"])
        except ValueError:
            raise ValidationFailed(f"Unknown status: {values['status']}")


class AppointmentTypeService:
    def __init__(self, db: Session, organization_id: str):
        self.db = db
        self.organization_id = organization_id
        self.repository = AppointmentTypeRepository(db, organization_id)

    def list(self, published_only: bool, include_archived: bool = False) -> List[AppointmentType]:
        types = self.repository.list(include_deleted=include_archived)
        if published_only:
            types = [t for t in types if t.status == AppointmentTypeStatus.PUBLISHED.value]
        return types

    def get(self, appointment_type_id: str) -> AppointmentType:
        return self.repository.get_or_404(appointment_type_id, include_deleted=False)

    def _instructor_memberships(self, instructor_ids: Iterable[str]) -> List[Membership]:
        ids = list(dict.fromkeys(instructor_ids))
        if not ids:
            return []
        memberships = self.db.query(Membership).filter(
            Membership.id.in_(ids),
            Membership.organization_id == self.organization_id,
            Membership.status == MembershipStatus.ACTIVE.value,
        ).all()
        valid = [m for m in memberships if MembershipRole(m.role) in INSTRUCTOR_CAPABLE_ROLES]
        if len(valid) != len(ids):
            raise ValidationFailed("One or more instructors are not active instructors of this organization")
        return valid

    def create(self, instructor_ids: Iterable[str] = (), **values: Any) -> AppointmentType:
        values = {k: v for k, v in values.items() if k in UPDATABLE_FIELDS}
        values.setdefault("status", AppointmentTypeStatus.DRAFT.value)
        if "name" not in values or "duration" not in values:
            raise ValidationFailed("Name and duration are required")
        _validate_fields(values)

        instructors = self._instructor_memberships(instructor_ids)
        appointment_type = self.repository.create(version=0, **values)
        for membership in instructors:
            self.db.add(AppointmentTypeInstructor(
                organization_id=self.organization_id,
                appointment_type_id=appointment_type.id,
                instructor_id=membership.id,
            ))
        self.db.flush()
        logger.info(
            "Appointment type created",
            extra={
                "organization_id": self.organization_id,
                "appointment_type_id": appointment_type.id,
                "instructors": len(instructors),
            },
        )
        return appointment_type

    def update(self, appointment_type_id: str, expected_version: int, **changes: Any) -> AppointmentType:
        """
        Compare-and-set update.

        Raises:
            NotFound: unknown or archived type
            Conflict: expected_version is stale
        """
        changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        _validate_fields(changes)

        updated = (
            self.db.query(AppointmentType)
            .filter(
                AppointmentType.id == appointment_type_id,
                AppointmentType.organization_id == self.organization_id,
                AppointmentType.deleted_at.is_(None),
                AppointmentType.version == expected_version,
            )
            .update(
                {**changes, AppointmentType.version: AppointmentType.version + 1},
                synchronize_session=False,
            )
        )
        if updated == 0:
            current = self.get(appointment_type_id)
            raise Conflict(
                "This appointment type was modified by someone else. Reload and try again.",
                expected_version=expected_version,
                current_version=current.version,
            )

        appointment_type = self.get(appointment_type_id)
        self.db.refresh(appointment_type)
        logger.info(
            "Appointment type updated",
            extra={
                "appointment_type_id": appointment_type_id,
                "version": appointment_type.version,
                "fields": sorted(changes),
            },
        )
        return appointment_type

    def archive(self, appointment_type_id: str) -> AppointmentType:
        appointment_type = self.repository.soft_delete(appointment_type_id)
        appointment_type.status = AppointmentTypeStatus.UNPUBLISHED.value
        self.db.flush()
        return appointment_type

    def restore(self, appointment_type_id: str) -> AppointmentType:
        return self.repository.restore(appointment_type_id)


def serialize_appointment_type(appointment_type: AppointmentType) -> Dict[str, Any]:
    return {
        "id": appointment_type.id,
        "name": appointment_type.name,
        "description": appointment_type.description,
        "duration": appointment_type.duration,
        "status": appointment_type.status,
        "default_is_online": appointment_type.default_is_online,
        "default_address": appointment_type.default_address,
        "default_video_link": appointment_type.default_video_link,
        "version": appointment_type.version,
        "archived": appointment_type.is_deleted,
        "instructor_ids": [q.instructor_id for q in appointment_type.instructors],
    }
