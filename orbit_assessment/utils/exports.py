from __future__ import annotations

import io
from collections.abc import Iterable, Mapping, Sequence

import pandas as pd

from ..domain.catalog import get_maturity_model
from ..domain.models import CapabilityAssessment, Rating
from ..domain.services import ScoringService

PROFILE_COLUMNS = ["Domain", "Area", "Dimension", "As Is", "To Be", "Notes", "Barriers", "Plans"]


def _joined(texts: Iterable[str]) -> str:
    return "; ".join(t.strip() for t in texts if t and t.strip())


def maturity_profile_frame(
    assessments: Sequence[CapabilityAssessment],
    ratings_by_assessment: Mapping[str, Sequence[Rating]],
    scoring: ScoringService | None = None,
) -> pd.DataFrame:
    """One row per dimension per area: As-Is/To-Be averages plus the ratings' free text."""
    scoring = scoring or ScoringService()
    model = get_maturity_model()
    rows = []
    for a in sorted(assessments, key=lambda x: (x.capability_domain_name, x.capability_area_name)):
        ratings = list(ratings_by_assessment.get(a.id, ()))
        score = scoring.score_assessment(a.id, ratings)
        for dim in score.dimensions:
            in_dim = [r for r in ratings if r.dimension_id == dim.id]
            rows.append(
                {
                    "Domain": a.capability_domain_name,
                    "Area": a.capability_area_name,
                    "Dimension": model.dimension(dim.id).name,
                    "As Is": dim.average,
                    "To Be": dim.target_average,
                    "Notes": _joined(r.notes for r in in_dim),
                    "Barriers": _joined(r.barriers for r in in_dim),
                    "Plans": _joined(r.plans for r in in_dim),
                }
            )
    return pd.DataFrame(rows, columns=PROFILE_COLUMNS)


def maturity_profile_csv(frame: pd.DataFrame) -> str:
    return frame.to_csv(index=False)


def maturity_profile_xlsx_bytes(frame: pd.DataFrame) -> bytes:
    """Single-sheet Excel workbook of the profile."""
    if frame is None:
        frame = pd.DataFrame(columns=PROFILE_COLUMNS)

    # Guarantee column ordering and presence for consumers opening the sheet in Excel
    frame = frame.copy()
    for column in PROFILE_COLUMNS:
        if column not in frame.columns:
            frame[column] = pd.NA
    frame = frame[PROFILE_COLUMNS]

    bio = io.BytesIO()
    with pd.ExcelWriter(bio, engine="xlsxwriter") as writer:
        frame.to_excel(writer, index=False, sheet_name="Maturity Profile")
    return bio.getvalue()
