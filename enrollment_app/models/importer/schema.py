"""
SQLAlchemy models backing the payroll CSV importer.

Jobs track one uploaded file each, decisions hold ambiguous identity matches
awaiting (or replaying) a human resolution, and failed imports keep every row
that could not be integrated so nothing is silently dropped.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
)


class DecisionAction(str, enum.Enum):
    """Resolutions a reviewer can apply to an ambiguous match."""

    LINK = "link"
    CREATE_NEW = "create_new"
    SKIP = "skip"
    UPDATE_AND_LINK = "update_and_link"


class DecisionMatchKind(str, enum.Enum):
    NAME_SIMILARITY = "name_similarity"
    NSS_COLLISION = "nss_collision"


class ImportJob(BaseModel):
    """Metadata describing a single uploaded file and its processing state."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True, index=True)
    import_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="sage", index=True)
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    result_summary: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Running outcome tallies persisted with progress so a resumed job keeps its totals.",
    )
    source_filename: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    ingest_params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Stored parameters for retry/resume support (file_path, keep_file).",
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    decisions = relationship("ImportDecision", back_populates="import_job", passive_deletes=True)

    @property
    def progress(self) -> int:
        """Percentage derived from the row counters; never stored."""

        if not self.total_rows:
            return 0
        return round(self.processed_rows * 100 / self.total_rows)

    def to_status_payload(self) -> dict:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "error_message": self.error_message,
            "result_summary": self.result_summary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return f"<ImportJob {self.job_id} {self.status.value}>"


class ImportDecision(BaseModel):
    """Ambiguous identity match between a CSV row and an existing user."""

    __tablename__ = "import_decisions"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    import_source: Mapped[str] = mapped_column(db.String(50), nullable=False, default="sage", index=True)
    job_id: Mapped[str | None] = mapped_column(
        ForeignKey("import_jobs.job_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    row_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    dni_csv: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    name_csv: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    first_surname_csv: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    second_surname_csv: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    name_db: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    first_surname_db: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    second_surname_db: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    dni_db: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    email_db: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    nss_db: Mapped[str | None] = mapped_column(db.String(20), nullable=True)

    similarity_score: Mapped[Decimal] = mapped_column(db.Numeric(5, 4), nullable=False)
    match_kind: Mapped[DecisionMatchKind] = mapped_column(
        Enum(DecisionMatchKind, name="import_decision_match_kind_enum"),
        nullable=False,
        default=DecisionMatchKind.NAME_SIMILARITY,
    )
    csv_row_data: Mapped[list] = mapped_column(db.JSON, nullable=False)
    candidate_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Existing user the matcher proposed; never changed after creation.",
    )
    selected_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="User the resolution applies to; defaults to the candidate.",
    )
    processed: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)
    decision_action: Mapped[DecisionAction | None] = mapped_column(
        Enum(DecisionAction, name="import_decision_action_enum"),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    undo_payload: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Before-state captured when linking so the resolution can be reverted.",
    )

    import_job = relationship("ImportJob", back_populates="decisions")
    candidate_user = relationship("User", foreign_keys=[candidate_user_id])
    selected_user = relationship("User", foreign_keys=[selected_user_id])

    __table_args__ = (
        Index(
            "uq_import_decisions_pending_pair",
            "dni_csv",
            "candidate_user_id",
            unique=True,
            postgresql_where=text("processed = false"),
            sqlite_where=text("processed = 0"),
        ),
        Index("idx_import_decisions_source_processed", "import_source", "processed"),
    )

    @property
    def csv_surnames(self) -> str:
        return " ".join(part for part in (self.first_surname_csv, self.second_surname_csv) if part)

    def __repr__(self) -> str:
        return f"<ImportDecision {self.id} processed={self.processed}>"


class FailedImportRecord(BaseModel):
    """Append-only record of a row that could not be integrated."""

    __tablename__ = "failed_user_imports"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    import_source: Mapped[str] = mapped_column(db.String(50), nullable=False, default="sage", index=True)
    job_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    row_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    dni: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    first_surname: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    second_surname: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    import_id: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    nss: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    company_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True, index=True)
    center_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True)
    csv_row_data: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    failure_reason: Mapped[str] = mapped_column(db.Text, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "row_number": self.row_number,
            "dni": self.dni,
            "name": self.name,
            "first_surname": self.first_surname,
            "second_surname": self.second_surname,
            "email": self.email,
            "import_id": self.import_id,
            "nss": self.nss,
            "company_name": self.company_name,
            "center_name": self.center_name,
            "csv_row_data": self.csv_row_data,
            "failure_reason": self.failure_reason,
            "import_source": self.import_source,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<FailedImportRecord {self.id} dni={self.dni}>"
