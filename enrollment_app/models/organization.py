# enrollment_app/models/organization.py

from sqlalchemy import ForeignKey, Index, UniqueConstraint, text

from .base import BaseModel, db


class Company(BaseModel):
    """Employer imported from payroll exports."""

    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    company_name = db.Column(db.String(200), nullable=False, index=True)
    corporate_name = db.Column(db.String(200), nullable=False)
    cif = db.Column(db.String(20), unique=True, nullable=True)
    import_id = db.Column(db.String(200), unique=True, nullable=True)

    centers = db.relationship("Center", back_populates="company", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Company {self.company_name}>"


class Center(BaseModel):
    """Work center belonging to a company."""

    __tablename__ = "centers"

    id = db.Column(db.Integer, primary_key=True)
    center_name = db.Column(db.String(200), nullable=False)
    center_code = db.Column(db.String(50), nullable=True)
    employer_number = db.Column(db.String(50), nullable=True)
    company_id = db.Column(db.Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    # "<company_id>:<center_name>" so placeholder centers never collide across companies
    import_id = db.Column(db.String(255), unique=True, nullable=False)

    company = db.relationship("Company", back_populates="centers")
    user_assignments = db.relationship("UserCenter", back_populates="center", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Center {self.import_id}>"


class UserCenter(BaseModel):
    """Assignment of a user to a work center over a date range."""

    __tablename__ = "user_center"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    center_id = db.Column(db.Integer, ForeignKey("centers.id", ondelete="CASCADE"), nullable=False, index=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    is_main_center = db.Column(db.Boolean, default=False, nullable=False)

    user = db.relationship("User", back_populates="center_assignments")
    center = db.relationship("Center", back_populates="user_assignments")

    __table_args__ = (
        UniqueConstraint("user_id", "center_id", name="uq_user_center_pair"),
        Index(
            "uq_user_center_main",
            "user_id",
            unique=True,
            postgresql_where=text("is_main_center"),
            sqlite_where=text("is_main_center = 1"),
        ),
    )

    def __repr__(self):
        return f"<UserCenter user={self.user_id} center={self.center_id} main={self.is_main_center}>"
