# enrollment_app/models/user.py

from sqlalchemy import Enum, Index

from .base import BaseModel, db, utc_now
from .enums import DocumentType, Gender

# Fields the importer may fill when they are still empty on an existing person.
GAP_FILL_FIELDS = ("salary_group", "professional_category", "birth_date", "nss", "email")


class User(BaseModel):
    """A trainee or employee enrolled through the platform."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    dni = db.Column(db.String(20), unique=True, nullable=True, index=True)
    document_type = db.Column(
        Enum(DocumentType, name="document_type_enum"),
        default=DocumentType.DNI,
        nullable=False,
    )
    nss = db.Column(db.String(20), nullable=True, index=True)
    name = db.Column(db.String(100), nullable=True)
    first_surname = db.Column(db.String(100), nullable=True)
    second_surname = db.Column(db.String(100), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    birth_date = db.Column(db.Date, nullable=True)
    gender = db.Column(Enum(Gender, name="gender_enum"), default=Gender.OTHER, nullable=False)
    professional_category = db.Column(db.String(200), nullable=True)
    salary_group = db.Column(db.Integer, nullable=True)
    import_id = db.Column(db.String(50), nullable=True, index=True)

    registration_date = db.Column(db.DateTime(timezone=True), default=utc_now, nullable=False)
    seasonal_worker = db.Column(db.Boolean, default=False, nullable=False)
    erte_law = db.Column(db.Boolean, default=False, nullable=False)
    accreditation_diploma = db.Column(db.String(1), default="N", nullable=False)

    center_assignments = db.relationship(
        "UserCenter", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (Index("idx_users_name_surname", "name", "first_surname"),)

    @property
    def full_name(self) -> str:
        parts = (self.name, self.first_surname, self.second_surname)
        return " ".join(part for part in parts if part)

    def __repr__(self):
        return f"<User {self.dni or self.id}>"
