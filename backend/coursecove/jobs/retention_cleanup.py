"""
Retention Cleanup Job.

Hard deletes soft-deleted records once their grace window has passed:
- memberships: REMOVED longer than MEMBERSHIP_RETENTION_DAYS
- appointment_types: archived (deleted_at) longer than the window
- business_locations: deleted longer than the window

Each family is an independent job with its own daily schedule
(MEMBERSHIP_PURGE_CRON, APPOINTMENT_TYPE_PURGE_CRON, LOCATION_PURGE_CRON;
`--schedule` prints them as crontab entries). Rows blocked by
appointments are skipped and counted, never forced.

Run:
    python -m coursecove.jobs.retention_cleanup            # all families
    python -m coursecove.jobs.retention_cleanup --job memberships
    python -m coursecove.jobs.retention_cleanup --schedule   # crontab entries
"""

import argparse
import logging
import sys
from datetime import datetime
from typing import Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from coursecove.config.settings import get_settings
from coursecove.database.session import get_db_session_sync
from coursecove.models.appointment_type import AppointmentType
from coursecove.models.base import utcnow
from coursecove.models.business_location import BusinessLocation
from coursecove.repositories.soft_delete import appointment_type_blockers, purge_deleted_before
from coursecove.services.membership_lifecycle import MembershipLifecycle

logger = logging.getLogger(__name__)

JOB_NAMES = ("memberships", "appointment_types", "locations")


class RetentionCleanup:
    """Purges expired soft-deleted rows for every entity family."""

    def __init__(
        self,
        db_session: Session,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db_session
        self.retention_days = (
            retention_days if retention_days is not None
            else get_settings().membership_retention_days
        )
        self._clock = clock
        self.stats: Dict[str, Dict[str, int]] = {}

    @property
    def cutoff_date(self) -> datetime:
        return self._clock() - relativedelta(days=self.retention_days)

    def purge_memberships(self) -> Dict[str, int]:
        lifecycle = MembershipLifecycle(self.db, retention_days=self.retention_days, clock=self._clock)
        return lifecycle.purge_expired()

    def purge_appointment_types(self) -> Dict[str, int]:
        return purge_deleted_before(
            self.db,
            AppointmentType,
            self.cutoff_date,
            blockers=appointment_type_blockers,
        )

    def purge_locations(self) -> Dict[str, int]:
        return purge_deleted_before(self.db, BusinessLocation, self.cutoff_date)

    def run(self, job: str) -> Dict[str, int]:
        """Run one family. Failures of the whole job are logged and reported as errors."""
        jobs = {
            "memberships": self.purge_memberships,
            "appointment_types": self.purge_appointment_types,
            "locations": self.purge_locations,
        }
        if job not in jobs:
            raise ValueError(f"Unknown job {job!r}; expected one of {', '.join(JOB_NAMES)}")

        logger.info(
            "Starting retention cleanup",
            extra={"job": job, "cutoff_date": self.cutoff_date.isoformat()},
        )
        try:
            result = jobs[job]()
        except Exception as e:
            self.db.rollback()
            logger.error(
                "Retention cleanup job failed",
                extra={"job": job, "error": str(e)},
                exc_info=True,
            )
            result = {"deleted": 0, "total": 0, "errors": 1}

        self.stats[job] = result
        return result

    def run_all(self) -> Dict[str, Dict[str, int]]:
        start_time = self._clock()
        for job in JOB_NAMES:
            self.run(job)

        duration = (self._clock() - start_time).total_seconds()
        logger.info(
            "Retention cleanup completed",
            extra={
                "total_deleted": sum(s["deleted"] for s in self.stats.values()),
                "duration_seconds": duration,
            },
        )
        return dict(self.stats)


def job_schedule(settings=None) -> Dict[str, str]:
    """Cron expression per entity family, from settings."""
    settings = settings or get_settings()
    return {
        "memberships": settings.membership_purge_cron,
        "appointment_types": settings.appointment_type_purge_cron,
        "locations": settings.location_purge_cron,
    }


def crontab_lines(settings=None) -> List[str]:
    """One crontab entry per family, for deployment."""
    return [
        f"{cron} python -m coursecove.jobs.retention_cleanup --job {job}"
        for job, cron in job_schedule(settings).items()
    ]


def main(argv=None):
    """Main entry point for retention cleanup job."""
    parser = argparse.ArgumentParser(description="Purge expired soft-deleted records")
    parser.add_argument("--job", choices=JOB_NAMES, help="Run a single entity family")
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Print the crontab entries for every family and exit",
    )
    args = parser.parse_args(argv)

    if args.schedule:
        for line in crontab_lines():
            print(line)
        return

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db_gen = get_db_session_sync()
    try:
        session = next(db_gen)
        cleanup = RetentionCleanup(session)
        stats = cleanup.run(args.job) if args.job else cleanup.run_all()
        logger.info("Retention cleanup stats", extra={"stats": stats})
    except Exception as e:
        logger.error("Retention cleanup failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        db_gen.close()


if __name__ == "__main__":
    main()
