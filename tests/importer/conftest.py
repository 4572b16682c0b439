from __future__ import annotations

import pytest

from enrollment_app.importer.contracts import SAGE_COLUMN_COUNT, SAGE_DELIMITER, SageColumn
from enrollment_app.importer.pipeline import (
    DecisionService,
    FailureVault,
    ImportJobService,
    RowProcessor,
    normalize_row,
)
from enrollment_app.models import User, db

SAGE_HEADER = SAGE_DELIMITER.join(
    [
        "Empleador",
        "CodCentro",
        "Centro",
        "Empleado",
        "DNI",
        "Nombre",
        "Apellidos",
        "FechaAlta",
        "FechaBaja",
        "Categoria",
        "Email",
        "FechaNacimiento",
        "GrupoCotizacion",
        "Movilidad",
        "NSS",
        "Sexo",
        "Tarifa",
        "Empresa",
        "CIF",
        "NumPatronal",
    ]
)

DEFAULT_ROW = {
    SageColumn.EMPLOYER_CODE: "001",
    SageColumn.CENTER_CODE: "C01",
    SageColumn.CENTER_NAME: "Madrid Centro",
    SageColumn.EMPLOYEE_CODE: "E100",
    SageColumn.DNI: "12345678Z",
    SageColumn.NAME: "Ana",
    SageColumn.SURNAMES: "Lopez Garcia",
    SageColumn.START_DATE: "01/02/2020",
    SageColumn.END_DATE: "",
    SageColumn.CATEGORY: "Administrativo",
    SageColumn.EMAIL: "ana.lopez@example.com",
    SageColumn.BIRTH_DATE: "15/06/1985",
    SageColumn.PAY_GROUP: "5",
    SageColumn.MOBILITY: "N",
    SageColumn.NSS: "281234567890",
    SageColumn.SEX: "M",
    SageColumn.TARIFF: "5",
    SageColumn.COMPANY_NAME: "Acme Servicios SL",
    SageColumn.COMPANY_CIF: "B12345678",
    SageColumn.EMPLOYER_NUMBER: "28/1234567/89",
}

_FIELD_COLUMNS = {column.name.lower(): column for column in SageColumn}


@pytest.fixture
def sage_row():
    """Build a 20-field Sage record; keyword names follow ``SageColumn`` in lower case."""

    def _build(**overrides) -> list[str]:
        values = dict(DEFAULT_ROW)
        for key, value in overrides.items():
            values[_FIELD_COLUMNS[key]] = value
        return [values.get(SageColumn(index), "") for index in range(SAGE_COLUMN_COUNT)]

    return _build


@pytest.fixture
def sage_csv():
    """Join records into Sage file bytes, header included unless disabled."""

    def _build(*rows, header: bool = True, encoding: str = "utf-8") -> bytes:
        lines = [SAGE_HEADER] if header else []
        lines.extend(SAGE_DELIMITER.join(row) if not isinstance(row, str) else row for row in rows)
        return ("\r\n".join(lines) + "\r\n").encode(encoding)

    return _build


@pytest.fixture
def processed(sage_row):
    """Normalize a built row in one step."""

    def _build(row_number: int = 2, **overrides):
        return normalize_row(sage_row(**overrides), row_number)

    return _build


@pytest.fixture
def user_factory(app):
    def _create(**fields) -> User:
        values = {
            "dni": None,
            "name": "Juan",
            "first_surname": "Perez",
            "second_surname": "Gomez",
        }
        values.update(fields)
        user = User(**values)
        db.session.add(user)
        db.session.commit()
        return user

    return _create


@pytest.fixture
def job_service(app):
    return ImportJobService()


@pytest.fixture
def decision_service(app):
    return DecisionService()


@pytest.fixture
def row_processor(app):
    return RowProcessor(job_id=None)


@pytest.fixture
def failure_vault(app):
    return FailureVault()


@pytest.fixture
def run_import(job_service, sage_csv):
    """Submit rows through the eager worker and return the finished job's status payload."""

    def _run(*rows, filename: str = "sage.csv", **kwargs) -> dict:
        job_id = job_service.submit(sage_csv(*rows, **kwargs), filename)
        return job_service.get_status(job_id)

    return _run
