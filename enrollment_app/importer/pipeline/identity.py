"""
Identity matching between normalized rows and existing users.

Matching runs in a fixed order: exact DNI, NSS collision, fuzzy full-name
similarity. The fuzzy step sits behind ``IdentityMatcher.find_similar`` so
the full scan can be swapped for an indexed lookup without touching callers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from flask import current_app, has_app_context
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import Session

from enrollment_app.models import GAP_FILL_FIELDS, DecisionMatchKind, DocumentType, Gender, User, db
from enrollment_app.models.base import utc_now

from .normalizer import ProcessedUserData, build_full_name

DEFAULT_SIMILARITY_THRESHOLD = 0.90
DEFAULT_NSS_COLLISION_SCORE = 0.95
DEFAULT_MIN_NAME_LENGTH = 3


@dataclass(frozen=True)
class MatchingSettings:
    """Thresholds shared by the matcher and the requires-decision gate."""

    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    nss_collision_score: float = DEFAULT_NSS_COLLISION_SCORE
    min_name_length: int = DEFAULT_MIN_NAME_LENGTH

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "MatchingSettings":
        if config is None:
            config = current_app.config if has_app_context() else {}
        return cls(
            similarity_threshold=float(config.get("IMPORTER_SIMILARITY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD)),
            nss_collision_score=float(config.get("IMPORTER_NSS_COLLISION_SCORE", DEFAULT_NSS_COLLISION_SCORE)),
            min_name_length=int(config.get("IMPORTER_MIN_NAME_LENGTH", DEFAULT_MIN_NAME_LENGTH)),
        )


@dataclass(frozen=True)
class SimilarityMatch:
    user_id: int
    score: float
    full_name: str


@dataclass(frozen=True)
class IdentityCandidate:
    """An existing user that may be the person in the row."""

    user: User
    score: float
    kind: DecisionMatchKind


def compute_gap_fill(user: User, data: ProcessedUserData) -> dict[str, Any]:
    """Return the updates that only fill fields currently empty on ``user``."""

    updates: dict[str, Any] = {}
    for field_name in GAP_FILL_FIELDS:
        incoming = getattr(data, field_name)
        if incoming is None or incoming == "":
            continue
        if getattr(user, field_name) is None:
            updates[field_name] = incoming
    return updates


def apply_updates(user: User, updates: Mapping[str, Any]) -> None:
    for field_name, value in updates.items():
        setattr(user, field_name, value)


def build_user(data: ProcessedUserData) -> User:
    """Construct a new user from row data with defaults for non-exported fields."""

    return User(
        dni=data.dni,
        document_type=DocumentType.DNI,
        name=data.name,
        first_surname=data.first_surname,
        second_surname=data.second_surname,
        email=data.email,
        birth_date=data.birth_date,
        gender=Gender.OTHER,
        professional_category=data.professional_category,
        salary_group=data.salary_group,
        nss=data.nss,
        import_id=data.import_id,
        registration_date=utc_now(),
        seasonal_worker=False,
        erte_law=False,
        accreditation_diploma="N",
    )


class IdentityMatcher:
    """Locate the existing user a normalized row refers to, if any."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        settings: MatchingSettings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.settings = settings or MatchingSettings.from_config()
        self.logger = logger or logging.getLogger(__name__)

    def find_exact(self, data: ProcessedUserData) -> User | None:
        if not data.dni:
            return None
        return self.session.query(User).filter_by(dni=data.dni).first()

    def find_nss_collision(self, data: ProcessedUserData) -> User | None:
        """Return the user holding the row's NSS; only called after the DNI lookup missed."""

        if not data.nss:
            return None
        return self.session.query(User).filter(User.nss == data.nss).order_by(User.id).first()

    def find_similar(self, data: ProcessedUserData) -> list[SimilarityMatch]:
        """
        Score every named user against the row's full name.

        Similarity is ``1 - levenshtein(a, b) / max(len(a), len(b))`` over the
        lower-cased full names; matches below the configured threshold are
        dropped and the rest returned best first.
        """

        target = data.normalized_full_name
        if len(target) < self.settings.min_name_length:
            return []

        rows = (
            self.session.query(User.id, User.name, User.first_surname, User.second_surname)
            .filter(User.name.isnot(None), User.first_surname.isnot(None))
            .order_by(User.id)
            .all()
        )
        choices: dict[int, str] = {}
        for user_id, name, first_surname, second_surname in rows:
            full_name = build_full_name(name, first_surname, second_surname)
            if len(full_name) >= self.settings.min_name_length:
                choices[user_id] = full_name

        if not choices:
            return []

        results = process.extract(
            target,
            choices,
            scorer=Levenshtein.normalized_similarity,
            score_cutoff=self.settings.similarity_threshold,
            limit=None,
        )
        matches = [SimilarityMatch(user_id=key, score=float(score), full_name=choice) for choice, score, key in results]
        matches.sort(key=lambda match: (-match.score, match.user_id))
        return matches

    def find_candidate(self, data: ProcessedUserData) -> IdentityCandidate | None:
        """Return the ambiguous candidate for a row without an exact DNI match."""

        collision = self.find_nss_collision(data)
        if collision is not None:
            return IdentityCandidate(
                user=collision,
                score=self.settings.nss_collision_score,
                kind=DecisionMatchKind.NSS_COLLISION,
            )

        matches = self.find_similar(data)
        if not matches:
            return None
        best = matches[0]
        user = self.session.get(User, best.user_id)
        if user is None:  # pragma: no cover - deleted between queries
            return None
        self.logger.debug(
            "Fuzzy candidate found for row %s",
            data.row_number,
            extra={
                "importer_row_number": data.row_number,
                "importer_candidate_user_id": best.user_id,
                "importer_similarity": best.score,
            },
        )
        return IdentityCandidate(user=user, score=best.score, kind=DecisionMatchKind.NAME_SIMILARITY)
