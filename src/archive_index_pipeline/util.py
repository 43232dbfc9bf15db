from __future__ import annotations

import re
from uuid import NAMESPACE_URL, uuid5

PROVISIONAL_ID_PREFIX = "gen_"

_NON_ALNUM_RE = re.compile(r"[\W_]+", re.UNICODE)
_INVALID_ID_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]+")


def normalize_key(value: str | None) -> str:
    """
    Lower-cases and strips everything that is not a letter or digit.

    "B 153 / Bundesministerium" -> "b153bundesministerium"
    """
    return _NON_ALNUM_RE.sub("", (value or "").lower())


def strip_source_prefix(source_id: str | None, prefix: str) -> str | None:
    source_id = (source_id or "").strip()
    if not source_id:
        return None
    if prefix and source_id.startswith(prefix):
        source_id = source_id[len(prefix) :]
    # Backend document ids only allow [A-Za-z0-9_-].
    source_id = _INVALID_ID_CHARS_RE.sub("-", source_id).strip("-")
    return source_id or None


def provisional_id(*, scope: str | None, unitid: str | None, title: str | None) -> str:
    """
    Deterministic id for an element that has no source id.

    Scoped (usually by the parent id) so that common headings ("Allgemeines")
    under different parents do not collapse into one record.
    """
    key = normalize_key(unitid) or normalize_key(title)
    return PROVISIONAL_ID_PREFIX + uuid5(NAMESPACE_URL, f"node:{scope or ''}:{key}").hex


def is_provisional_id(node_id: str | None) -> bool:
    return bool(node_id) and node_id.startswith(PROVISIONAL_ID_PREFIX)


def origin_id(name: str) -> str:
    """
    Deterministic origin id derived from the origin name, so concurrent imports
    converge on the same record.
    """
    return uuid5(NAMESPACE_URL, f"origin:{name.strip()}").hex


def first_letter(value: str | None) -> str:
    for ch in (value or "").strip():
        if ch.isalpha():
            return ch.upper()
        if ch.isdigit():
            return "#"
    return "#"


_UNITID_PREFIX_RE = re.compile(r"^[A-Za-zÄÖÜäöü]+")


def unitid_prefix(unitid: str | None) -> str | None:
    match = _UNITID_PREFIX_RE.match((unitid or "").strip())
    return match.group(0).upper() if match else None
