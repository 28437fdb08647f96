"""
similarity.py — Sub-scores for a candidate (activity, deal) pair.

Three pure, deterministic scoring curves, each returning 0-100:

  name_similarity    Edit-distance ratio over normalized names. Identical
                     names score 100; the ratio is computed on the combined
                     length, so scores degrade with length difference.
                     Names that resolve to the same configured alias score 95.
  date_proximity     100 at zero calendar-day delta, linear to 0 at the
                     tolerance (default ±2 days), 0 beyond.
  amount_correlation 100 when equal, linear decay with relative % difference
                     to 0 at amount_tolerance_pct; neutral (default 50) when
                     either amount is missing — absence is not a mismatch.

Called by: services/confidence.py, services/candidates.py, services/duplicates.py
Depends on: thefuzz, utils/normalization.py
"""

from datetime import date, datetime
from decimal import Decimal

from thefuzz import fuzz

from ..utils.normalization import build_alias_index, normalize_company_name

ALIAS_MATCH_SCORE = 95.0


def name_similarity(a: str | None, b: str | None, aliases: dict[str, list[str]] | None = None) -> float:
    """Similarity of two company names on a 0-100 scale (symmetric)."""
    norm_a = normalize_company_name(a)
    norm_b = normalize_company_name(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 100.0
    if aliases:
        index = build_alias_index(aliases)
        canon_a, canon_b = index.get(norm_a), index.get(norm_b)
        if canon_a and canon_a == canon_b:
            return ALIAS_MATCH_SCORE
    # token_sort_ratio forgives word order ("smith and jones" / "jones and smith")
    return float(max(fuzz.ratio(norm_a, norm_b), fuzz.token_sort_ratio(norm_a, norm_b)))


def _as_date(value) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value).date()
        except ValueError:
            return None
    return None


def day_delta(d1, d2) -> int | None:
    """Absolute calendar-day difference, or None if either date is unusable."""
    a, b = _as_date(d1), _as_date(d2)
    if a is None or b is None:
        return None
    return abs((a - b).days)


def date_proximity(d1, d2, tolerance_days: int = 2) -> float:
    """100 at zero delta, linearly decaying to 0 at tolerance_days."""
    delta = day_delta(d1, d2)
    if delta is None:
        return 0.0
    if tolerance_days <= 0:
        return 100.0 if delta == 0 else 0.0
    if delta >= tolerance_days:
        return 0.0
    return 100.0 * (tolerance_days - delta) / tolerance_days


def _as_number(value) -> float | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def relative_difference(a1, a2) -> float | None:
    """|a1 - a2| / max(|a1|, |a2|); None when an amount is missing."""
    x, y = _as_number(a1), _as_number(a2)
    if x is None or y is None:
        return None
    largest = max(abs(x), abs(y))
    if largest == 0:
        return 0.0
    return abs(x - y) / largest


def amount_correlation(
    a1,
    a2,
    tolerance_pct: float = 50,
    neutral: float = 50,
) -> float:
    """100 for equal amounts, 0 at tolerance_pct relative difference."""
    rel = relative_difference(a1, a2)
    if rel is None:
        return float(neutral)
    if rel == 0:
        return 100.0
    limit = tolerance_pct / 100.0
    if limit <= 0 or rel >= limit:
        return 0.0
    return 100.0 * (1 - rel / limit)


def match_analysis(name_score: float, delta_days: int | None, rel_diff: float | None) -> tuple[list[str], list[str]]:
    """Human-readable reasons and risks for a scored pair."""
    reasons: list[str] = []
    risks: list[str] = []

    if name_score >= 90:
        reasons.append(f"Strong name match ({round(name_score)}% similarity)")
    elif name_score >= 70:
        reasons.append(f"Good name match ({round(name_score)}% similarity)")
        risks.append("Name similarity could be coincidental")
    else:
        risks.append(f"Low name similarity ({round(name_score)}%)")

    if delta_days is None:
        risks.append("Missing date for comparison")
    elif delta_days == 0:
        reasons.append("Same date activity and deal")
    elif delta_days <= 3:
        reasons.append(f"Close dates ({delta_days} days apart)")
    elif delta_days <= 7:
        reasons.append(f"Recent dates ({delta_days} days apart)")
        risks.append("Date gap might indicate different transactions")
    else:
        risks.append(f"Large date gap ({delta_days} days apart)")

    if rel_diff is None:
        risks.append("Missing amount data for comparison")
    else:
        pct = rel_diff * 100
        if pct <= 5:
            reasons.append("Very similar amounts")
        elif pct <= 10:
            reasons.append(f"Similar amounts ({round(pct)}% difference)")
        elif pct <= 20:
            reasons.append(f"Moderate amount difference ({round(pct)}%)")
            risks.append("Amount difference might indicate different deals")
        else:
            risks.append(f"Large amount difference ({round(pct)}%)")

    return reasons, risks
