from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

DEFAULT_TRANSIENT_MARKERS: Tuple[str, ...] = ("create-user", "migration", "init", "setup", "seed")


@dataclass(frozen=True)
class Overrides:
    display_names: Mapping[str, str] = field(default_factory=dict)
    transient_markers: Tuple[str, ...] = DEFAULT_TRANSIENT_MARKERS


def load_overrides(path: Optional[Path]) -> Overrides:
    if not path:
        return Overrides()
    if not path.exists():
        return Overrides()

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Overrides()

    display_names: Dict[str, str] = {}
    names = raw.get("display_names")
    if isinstance(names, dict):
        for app_id, display in names.items():
            if isinstance(app_id, str) and isinstance(display, str) and app_id and display:
                display_names[app_id] = display

    transient_markers = DEFAULT_TRANSIENT_MARKERS
    markers = raw.get("transient_markers")
    if isinstance(markers, list):
        transient_markers = tuple(str(m) for m in markers if isinstance(m, str) and m)

    return Overrides(display_names=display_names, transient_markers=transient_markers)
