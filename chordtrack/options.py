"""Conversion options and their JSON loader.

JSON files use the camelCase names (``minNotes``, ``preferFlats`` ...);
every key is optional and unknown keys are rejected.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict


@dataclass(frozen=True)
class ConversionOptions:
    min_notes: int = 3
    ignore_drums: bool = True
    prefer_flats: bool = True
    use_slash: bool = True
    allow_extensions: bool = True
    emit_nc: bool = False
    gate_to_next: bool = True
    shortening_factor: float = 0.25
    include_original_notes: bool = False
    include_notes: bool = True
    embed_midi: bool = True
    window_fraction: float = 0.75
    hold_original_end: bool = False

    def replace(self, **changes) -> "ConversionOptions":
        """Return a copy with ``changes`` applied; ``None`` values are ignored."""
        updates = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **updates)


DEFAULT_OPTIONS = ConversionOptions()

JSON_KEYS: Dict[str, str] = {
    "minNotes": "min_notes",
    "ignoreDrums": "ignore_drums",
    "preferFlats": "prefer_flats",
    "useSlash": "use_slash",
    "allowExtensions": "allow_extensions",
    "emitNC": "emit_nc",
    "gateToNext": "gate_to_next",
    "shorteningFactor": "shortening_factor",
    "includeOriginalNotes": "include_original_notes",
    "includeNotes": "include_notes",
    "embedMidi": "embed_midi",
    "windowFraction": "window_fraction",
    "holdOriginalEnd": "hold_original_end",
}


def _require_dict(value: object, *, where: str) -> dict:
    if not isinstance(value, dict):
        raise ValueError(f"{where} must be an object")
    return value


def _require_bool(value: object, *, where: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{where} must be a boolean")
    return value


def _int_in_range(value: object, *, where: str, low: int, high: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{where} must be an integer")
    if not (low <= value <= high):
        raise ValueError(f"{where} must be in [{low}, {high}]")
    return value


def _positive_number(value: object, *, where: str, high: float | None = None) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"{where} must be a number")
    if value <= 0:
        raise ValueError(f"{where} must be greater than 0")
    if high is not None and value > high:
        raise ValueError(f"{where} must not exceed {high}")
    return float(value)


def parse_options(data: object) -> ConversionOptions:
    obj = _require_dict(data, where="options")
    unknown = sorted(set(obj) - set(JSON_KEYS))
    if unknown:
        raise ValueError(f"unknown option(s): {', '.join(unknown)}")

    values: Dict[str, object] = {}
    for key, raw in obj.items():
        name = JSON_KEYS[key]
        if name == "min_notes":
            values[name] = _int_in_range(raw, where=key, low=1, high=12)
        elif name == "shortening_factor":
            values[name] = _positive_number(raw, where=key, high=1.0)
        elif name == "window_fraction":
            values[name] = _positive_number(raw, where=key)
        else:
            values[name] = _require_bool(raw, where=key)
    return ConversionOptions(**values)


def load_options(path: Path) -> ConversionOptions:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_options(raw)


def options_to_json(options: ConversionOptions) -> Dict[str, object]:
    by_field = {name: key for key, name in JSON_KEYS.items()}
    return {by_field[f.name]: getattr(options, f.name) for f in fields(options)}
