# enrollment_app/models/enums.py

import enum


class Gender(str, enum.Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class DocumentType(str, enum.Enum):
    DNI = "DNI"
    NIE = "NIE"
    PASSPORT = "PASSPORT"
