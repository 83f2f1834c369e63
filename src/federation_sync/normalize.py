"""Normalization functions for platform rows and store records.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata

_DOB_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 3: normalize_name  (for name + date-of-birth matching)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, strip accents, remove punctuation except spaces, collapse spaces.

    Used for first-time linkage lookups and for the normalized name columns
    of the user store. "Élodie" and "ELODIE" both become "elodie".
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: dates of birth as YYYYMMDD integers
# ---------------------------------------------------------------------------

def parse_dob(value: str | None) -> int | None:
    """Parse 'YYYY-MM-DD' (optionally followed by a time part) into YYYYMMDD.

    '1975-08-26T00:00:00' → 19750826. Returns None on anything else.
    """
    v = trim(value)
    if v is None:
        return None
    m = _DOB_RE.match(v)
    if not m:
        return None
    yyyy, mm, dd = (int(g) for g in m.groups())
    if not (1 <= mm <= 12 and 1 <= dd <= 31):
        return None
    return yyyy * 10000 + mm * 100 + dd


def format_dob(dob: int) -> str:
    """Inverse of parse_dob: 19750826 → '1975-08-26'."""
    return f"{dob // 10000:04d}-{dob // 100 % 100:02d}-{dob % 100:02d}"


def dob_year(dob: int) -> int:
    return dob // 10000


# ---------------------------------------------------------------------------
# Rule 5: normalize_city  (for INSEE code lookups)
# ---------------------------------------------------------------------------

def normalize_city(value: str | None) -> str | None:
    """normalize_name with hyphens and apostrophes read as word breaks.

    "Saint-Étienne" and "SAINT ETIENNE" both become "saint etienne".
    """
    v = trim(value)
    if v is None:
        return None
    return normalize_name(re.sub(r"[-'’]", " ", v))
