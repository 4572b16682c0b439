"""
User-to-center assignment upserts and main-center maintenance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_app.models import Center, User, UserCenter, db

from .entities import find_or_create
from .normalizer import ProcessedUserData


@dataclass(frozen=True)
class AssignmentChange:
    """Outcome of an assignment upsert plus the dates it replaced."""

    assignment: UserCenter
    created: bool
    reincorporated: bool = False
    previous_start_date: date | None = None
    previous_end_date: date | None = None


def _is_later(candidate: date | None, current: date | None) -> bool:
    return candidate is not None and (current is None or candidate > current)


class RelationshipUpserter:
    """Maintain one assignment per (user, center) and one main center per user."""

    def __init__(self, session: Session | None = None, *, logger: logging.Logger | None = None) -> None:
        self.session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    def upsert(self, user: User, center: Center, data: ProcessedUserData) -> AssignmentChange:
        start_date = data.start_date
        end_date = data.end_date
        if start_date and end_date and start_date > end_date:
            # The row describes a re-entry after its own end date.
            end_date = None

        existing = self._find(user.id, center.id)
        if existing is None:
            assignment, created = find_or_create(
                self.session,
                lambda: self._find(user.id, center.id),
                lambda: UserCenter(
                    user_id=user.id,
                    center_id=center.id,
                    start_date=start_date,
                    end_date=end_date,
                    is_main_center=False,
                ),
            )
            if created:
                return AssignmentChange(assignment=assignment, created=True)
            existing = assignment

        previous_start, previous_end = existing.start_date, existing.end_date
        reincorporated = False
        if start_date and existing.end_date and start_date > existing.end_date:
            existing.start_date = start_date
            existing.end_date = None
            reincorporated = True
            self.logger.info(
                "Reincorporation detected for user %s at center %s",
                user.id,
                center.id,
                extra={"importer_row_number": data.row_number, "importer_user_id": user.id},
            )
        else:
            if _is_later(start_date, existing.start_date):
                existing.start_date = start_date
            if _is_later(end_date, existing.end_date):
                existing.end_date = end_date
            if data.start_date and data.end_date and data.start_date > data.end_date:
                existing.end_date = None

        return AssignmentChange(
            assignment=existing,
            created=False,
            reincorporated=reincorporated,
            previous_start_date=previous_start,
            previous_end_date=previous_end,
        )

    def ensure_main_center(self, user_id: int) -> UserCenter | None:
        """
        Mark the most recently started assignment as main when the user has none.

        Returns the assignment newly marked, or ``None`` when nothing changed.
        """

        has_main = (
            self.session.query(UserCenter.id).filter_by(user_id=user_id, is_main_center=True).first() is not None
        )
        if has_main:
            return None

        candidate = (
            self.session.query(UserCenter)
            .filter_by(user_id=user_id)
            .order_by(
                UserCenter.start_date.is_(None),
                UserCenter.start_date.desc(),
                UserCenter.id.desc(),
            )
            .first()
        )
        if candidate is None:
            return None

        try:
            with self.session.begin_nested():
                candidate.is_main_center = True
        except IntegrityError:
            # Another writer marked a main center first.
            return None
        return candidate

    def _find(self, user_id: int, center_id: int) -> UserCenter | None:
        return self.session.query(UserCenter).filter_by(user_id=user_id, center_id=center_id).first()
