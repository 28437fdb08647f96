"""Company / client name normalization for matching.

Pure functions, no side effects. Malformed or empty input normalizes to
an empty string instead of raising.
"""

import re

# Legal entity suffixes only; name parts are never stripped
# Ordered longest-first to avoid partial matches (e.g. "s.a.s." before "s.a.")
_SUFFIXES = [
    "incorporated",
    "corporation",
    "limited",
    "company",
    "inc.",
    "inc",
    "llc.",
    "llc",
    "llp",
    "ltd.",
    "ltd",
    "corp.",
    "corp",
    "co.",
    "co",
    "l.l.c.",
    "l.l.c",
    "p.l.c.",
    "plc",
    "gmbh",
    "s.a.s.",
    "s.a.s",
    "s.r.l.",
    "s.r.l",
    "s.a.",
    "sa",
    "ag",
    "b.v.",
    "bv",
    "n.v.",
    "nv",
    "pty",
    "pvt",
]

# Suffix must follow start, whitespace or a comma so "technologyco" survives
_SUFFIX_PATTERN = re.compile(
    r"(?:^|\s|,\s*)(?:" + "|".join(re.escape(s) for s in _SUFFIXES) + r")\.?\s*$",
    re.IGNORECASE,
)
_SEPARATORS = re.compile(r"[-/_&+]")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_company_name(name) -> str:
    """Normalize a company or client name for comparison.

    - Lowercase, trim
    - Strip trailing legal suffixes (Inc., LLC, Ltd., Corp., ...), repeatedly
    - Strip leading 'the'
    - Drop punctuation, turn separators into spaces
    - Collapse whitespace

    Examples:
        "Acme Corp"                → "acme"
        "ACME CORP."               → "acme"
        "The Phoenix Company LLC"  → "phoenix"
        "Digi-Key Electronics, Inc." → "digi key electronics"
    """
    if not name or not isinstance(name, str):
        return ""
    n = name.strip().lower()
    for _ in range(3):
        prev = n
        n = re.sub(r"[,\s]+$", "", n)
        n = _SUFFIX_PATTERN.sub("", n).strip()
        n = re.sub(r"[,.\-]+$", "", n).strip()
        if n == prev:
            break
    n = re.sub(r"^the\s+", "", n)
    n = _SEPARATORS.sub(" ", n)
    n = _PUNCTUATION.sub("", n)
    return _WHITESPACE.sub(" ", n).strip()


def build_alias_index(aliases: dict[str, list[str]] | None) -> dict[str, str]:
    """Map every normalized alias (and canonical name) to its canonical key."""
    index: dict[str, str] = {}
    for canonical, variants in (aliases or {}).items():
        key = normalize_company_name(canonical)
        if not key:
            continue
        index[key] = key
        for variant in variants or []:
            norm = normalize_company_name(variant)
            if norm:
                index[norm] = key
    return index


def longest_common_substring(a: str, b: str) -> int:
    """Length of the longest common contiguous substring of a and b."""
    if not a or not b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    best = 0
    prev = [0] * (len(b) + 1)
    for ch_a in a:
        cur = [0] * (len(b) + 1)
        for j, ch_b in enumerate(b, start=1):
            if ch_a == ch_b:
                cur[j] = prev[j - 1] + 1
                if cur[j] > best:
                    best = cur[j]
        prev = cur
    return best
