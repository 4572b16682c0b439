"""
Find-or-create resolution for companies and work centers.

Both lookups are backed by unique constraints; inserts run inside a SAVEPOINT
so a concurrent writer winning the race only costs a re-read, never a
duplicate row or a poisoned outer transaction.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_app.models import Center, Company, db

from .errors import IncompleteRowError
from .normalizer import ProcessedUserData

UNKNOWN_CENTER_NAME = "UNKNOWN"

T = TypeVar("T")


def center_import_key(company_id: int, center_name: str) -> str:
    return f"{company_id}:{center_name}"


def find_or_create(session: Session, lookup: Callable[[], T | None], factory: Callable[[], T]) -> tuple[T, bool]:
    """
    Return ``(instance, created)`` using ``lookup`` first and ``factory`` on a miss.

    A unique-constraint conflict on insert means another writer created the
    row first; the savepoint is rolled back and the lookup repeated.
    """

    existing = lookup()
    if existing is not None:
        return existing, False
    try:
        with session.begin_nested():
            instance = factory()
            session.add(instance)
    except IntegrityError:
        existing = lookup()
        if existing is None:
            raise
        return existing, False
    return instance, True


class EntityResolver:
    """Resolve the company and center referenced by a normalized row."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        unknown_center_name: str = UNKNOWN_CENTER_NAME,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.unknown_center_name = unknown_center_name
        self.logger = logger or logging.getLogger(__name__)

    def find_or_create_company(self, data: ProcessedUserData) -> tuple[Company, bool]:
        if not data.company_name:
            raise IncompleteRowError("company_name", data.row_number)
        if not data.company_cif:
            raise IncompleteRowError("company_cif", data.row_number)

        cif = data.company_cif
        import_id = data.company_import_id or data.company_name

        def lookup() -> Company | None:
            return (
                self.session.query(Company)
                .filter(or_(Company.cif == cif, Company.import_id == import_id))
                .order_by(Company.id)
                .first()
            )

        def factory() -> Company:
            return Company(
                company_name=data.company_name,
                corporate_name=data.company_name,
                cif=cif,
                import_id=import_id,
            )

        company, created = find_or_create(self.session, lookup, factory)
        if created:
            self.logger.info(
                "Created company %s",
                data.company_name,
                extra={"importer_company_id": company.id, "importer_row_number": data.row_number},
            )
        return company, created

    def find_or_create_center(self, data: ProcessedUserData, company: Company) -> tuple[Center, bool]:
        center_name = data.center_name or self.unknown_center_name
        import_key = center_import_key(company.id, center_name)

        def lookup() -> Center | None:
            return self.session.query(Center).filter_by(import_id=import_key).first()

        def factory() -> Center:
            return Center(
                center_name=center_name,
                center_code=data.center_code,
                employer_number=data.employer_number,
                company_id=company.id,
                import_id=import_key,
            )

        center, created = find_or_create(self.session, lookup, factory)
        if created and center_name == self.unknown_center_name:
            self.logger.warning(
                "Created placeholder center for company %s",
                company.company_name,
                extra={"importer_center_import_id": import_key, "importer_row_number": data.row_number},
            )
        return center, created
