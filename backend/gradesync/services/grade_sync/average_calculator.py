"""
Average score calculation from outcome rollups.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Set

from gradesync.schemas.grade_sync import RollupSnapshot, ScoreDelta, StudentRollup

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


def round2(value: float) -> float:
    """Round half-up to 2 decimal places."""
    return float(Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def _current_score(rollup: StudentRollup, target_id: str) -> Optional[float]:
    score = rollup.score_for(target_id)
    if score is None or not score.is_numeric:
        return None
    return float(score.score)


def compute_score_deltas(
    snapshot: RollupSnapshot,
    target_id: str,
    excluded_keywords: Iterable[str] = (),
    excluded_ids: Iterable[str] = (),
    zero_out: bool = False
) -> List[ScoreDelta]:
    """
    Compute the students whose target score needs to change.

    Scores for the target outcome itself, for ``excluded_ids`` and for outcomes
    whose title contains one of ``excluded_keywords`` (case-insensitive) are
    ignored. Students with no remaining numeric score are skipped, as are
    students whose current target score already equals the new average.

    Args:
        snapshot: Outcome rollups for the course
        target_id: Outcome being synchronized
        excluded_keywords: Title fragments of outcomes left out of the average
        excluded_ids: Outcome ids left out of the average
        zero_out: Test mode, assigns 0 to every student without filtering

    Returns:
        One delta per student needing an update, in rollup order
    """
    target_id = str(target_id)
    excluded: Set[str] = {target_id} | {str(outcome_id) for outcome_id in excluded_ids}
    keywords = [keyword.lower() for keyword in excluded_keywords if keyword]
    titles = snapshot.outcome_titles()

    deltas: List[ScoreDelta] = []
    seen: Set[str] = set()

    for rollup in snapshot.rollups:
        user_id = rollup.user_id
        if user_id is None or user_id in seen:
            continue
        seen.add(user_id)

        if zero_out:
            deltas.append(ScoreDelta(user_id=user_id, average=0.0))
            continue

        relevant = [
            score.score for score in rollup.scores
            if score.is_numeric
            and score.outcome_id not in excluded
            and not any(keyword in titles.get(score.outcome_id, "").lower() for keyword in keywords)
        ]

        if not relevant:
            continue

        average = round2(sum(relevant) / len(relevant))
        current = _current_score(rollup, target_id)

        if current is not None and round2(current) == average:
            continue

        deltas.append(ScoreDelta(user_id=user_id, average=average))

    if zero_out:
        logger.warning(f"Zero-out test mode assigned 0 to {len(deltas)} students")
    else:
        logger.info(f"Computed {len(deltas)} score changes from {len(snapshot.rollups)} rollups")

    return deltas
