"""
Durable side-store for rows that could not be integrated.

``FailureVault.record`` never raises: if the vault itself cannot write, the
payload is escalated to the error log at CRITICAL level so it can still be
recovered by an operator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from sqlalchemy import distinct, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from enrollment_app.importer.contracts import SAGE_IMPORT_SOURCE
from enrollment_app.importer.metrics import record_vault_write
from enrollment_app.models import FailedImportRecord, db

from .normalizer import ProcessedUserData

IDENTITY_FIELDS: tuple[str, ...] = (
    "dni",
    "name",
    "first_surname",
    "second_surname",
    "email",
    "import_id",
    "nss",
    "company_name",
    "center_name",
)
ERROR_BREAKDOWN_LIMIT = 10


@dataclass
class FailedImportStats:
    total: int = 0
    companies: int = 0
    centers: int = 0
    unique_errors: int = 0
    error_breakdown: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "companies": self.companies,
            "centers": self.centers,
            "unique_errors": self.unique_errors,
            "error_breakdown": list(self.error_breakdown),
        }


class FailedImportRepository:
    """Storage operations for ``FailedImportRecord`` rows."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    def insert(self, **fields: Any) -> FailedImportRecord:
        record = FailedImportRecord(**fields)
        self.session.add(record)
        self.session.flush()
        return record

    def list_records(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        job_id: str | None = None,
    ) -> tuple[list[FailedImportRecord], int]:
        page = max(page, 1)
        limit = max(min(limit, 500), 1)
        query = self.session.query(FailedImportRecord)
        if job_id:
            query = query.filter(FailedImportRecord.job_id == job_id)
        total = query.count()
        records = (
            query.order_by(FailedImportRecord.created_at.desc(), FailedImportRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return records, total

    def stats(self, *, job_id: str | None = None) -> FailedImportStats:
        base = self.session.query(FailedImportRecord)
        if job_id:
            base = base.filter(FailedImportRecord.job_id == job_id)

        totals = base.with_entities(
            func.count(FailedImportRecord.id),
            func.count(distinct(FailedImportRecord.company_name)),
            func.count(distinct(FailedImportRecord.center_name)),
            func.count(distinct(FailedImportRecord.failure_reason)),
        ).one()
        breakdown_rows = (
            base.with_entities(FailedImportRecord.failure_reason, func.count(FailedImportRecord.id).label("count"))
            .group_by(FailedImportRecord.failure_reason)
            .order_by(func.count(FailedImportRecord.id).desc(), FailedImportRecord.failure_reason)
            .limit(ERROR_BREAKDOWN_LIMIT)
            .all()
        )
        return FailedImportStats(
            total=totals[0] or 0,
            companies=totals[1] or 0,
            centers=totals[2] or 0,
            unique_errors=totals[3] or 0,
            error_breakdown=[{"failure_reason": reason, "count": count} for reason, count in breakdown_rows],
        )


def _extract_identity(source: ProcessedUserData | Mapping[str, Any] | None) -> dict[str, Any]:
    if source is None:
        return {name: None for name in IDENTITY_FIELDS}
    if isinstance(source, ProcessedUserData):
        return source.identity_fields()
    return {name: source.get(name) for name in IDENTITY_FIELDS}


class FailureVault:
    """Append-only sink guaranteeing no input row is silently lost."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        import_source: str = SAGE_IMPORT_SOURCE,
        repository: FailedImportRepository | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.import_source = import_source
        self.repository = repository or FailedImportRepository(self.session)
        self.logger = logger or logging.getLogger(__name__)

    def record(
        self,
        identity: ProcessedUserData | Mapping[str, Any] | None,
        raw_row: Sequence[str] | None,
        reason: str,
        *,
        job_id: str | None = None,
        row_number: int | None = None,
    ) -> int | None:
        """Persist a failed row and return its id, or ``None`` if storage failed."""

        fields = _extract_identity(identity)
        payload = {
            **fields,
            "csv_row_data": list(raw_row) if raw_row is not None else None,
            "failure_reason": reason,
            "import_source": self.import_source,
            "job_id": job_id,
            "row_number": row_number,
        }
        try:
            record = self.repository.insert(**payload)
            self.session.commit()
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            try:
                self.session.rollback()
            except SQLAlchemyError:  # pragma: no cover - connection already gone
                self.logger.error("Rollback after failed vault write also failed", exc_info=True)
            record_vault_write(success=False)
            self.logger.critical(
                "Failed import record could not be persisted; row data follows",
                exc_info=True,
                extra={
                    "importer_job_id": job_id,
                    "importer_row_number": row_number,
                    "importer_failed_payload": payload,
                    "importer_vault_error": str(exc),
                },
            )
            return None

        record_vault_write(success=True)
        self.logger.warning(
            "Row %s diverted to failed imports: %s",
            row_number,
            reason,
            extra={
                "importer_job_id": job_id,
                "importer_row_number": row_number,
                "importer_failed_record_id": record.id,
            },
        )
        return record.id

    def list_records(self, *, page: int = 1, limit: int = 50, job_id: str | None = None) -> dict[str, Any]:
        records, total = self.repository.list_records(page=page, limit=limit, job_id=job_id)
        return {
            "records": [record.to_dict() for record in records],
            "total": total,
            "page": max(page, 1),
            "limit": max(min(limit, 500), 1),
        }

    def stats(self, *, job_id: str | None = None) -> dict[str, Any]:
        return self.repository.stats(job_id=job_id).as_dict()
