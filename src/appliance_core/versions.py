from __future__ import annotations

import re
from itertools import zip_longest
from typing import List, Optional

from .models import VersionStatus

_DIGITS_RE = re.compile(r"\d+")


def normalize_version(version: Optional[str]) -> Optional[str]:
    if not version or not isinstance(version, str):
        return None
    normalized = version.strip()
    if normalized[:1] in {"v", "V"}:
        normalized = normalized[1:]
    return normalized or None


def numeric_segments(version: str) -> List[int]:
    """Dotted segments as integers; a segment without digits counts as 0."""
    segments = []
    for part in version.split("."):
        match = _DIGITS_RE.search(part)
        segments.append(int(match.group(0)) if match else 0)
    return segments


def compare_versions(installed: Optional[str], latest: Optional[str]) -> Optional[VersionStatus]:
    """Classify `installed` against the catalog's `latest`.

    Returns None when either side is missing. Shorter versions are padded with
    zeros, so "v1.0" and "1.0.0" are the same version.
    """
    current = normalize_version(installed)
    target = normalize_version(latest)
    if current is None or target is None:
        return None

    if current == target:
        return VersionStatus.UP_TO_DATE

    for have, want in zip_longest(numeric_segments(current), numeric_segments(target), fillvalue=0):
        if want > have:
            return VersionStatus.UPDATE_AVAILABLE
        if want < have:
            return VersionStatus.AHEAD
    return VersionStatus.UP_TO_DATE
