"""Chord-name parsing and the quality tables used by the Sequ encoder.

Quality text is normalized by walking ``QUALITY_RULES`` in order; the
first matching rule names the canonical quality.  Several spellings
match more than one rule (``7(9,#11,13)`` also contains ``7,9``), so the
order is part of the format and must not be rearranged.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .chords import CHORD_PATTERNS, NO_CHORD

ROOT_TO_PC: Dict[str, int] = {
    "C": 0,
    "C#": 1,
    "Db": 1,
    "D": 2,
    "D#": 3,
    "Eb": 3,
    "E": 4,
    "F": 5,
    "F#": 6,
    "Gb": 6,
    "G": 7,
    "G#": 8,
    "Ab": 8,
    "A": 9,
    "A#": 10,
    "Bb": 10,
    "B": 11,
}

# Sequ descriptor word 0 per canonical quality.
DESCRIPTOR_CODES: Dict[str, int] = {
    "7(9,#11,13)": 0xD5060103,
    "6(9,11)b5": 0x65020205,
    "dim7(b9)": 0x4B020308,
    "": 0x9100070F,
    "m": 0x8900070F,
    "sus2": 0x8500070F,
    "sus4": 0xA100070F,
    "5": 0x8100070F,
    "(b5)": 0x5100070F,
    "no3(b5)": 0x4100070F,
    "dim": 0x4900070F,
    "aug": 0x1101070F,
    "6": 0x9102070F,
    "7": 0x9104070F,
    "9": 0x9504070F,
    "maj7": 0x9108070F,
    "7(b9)": 0x9304070F,
    "7(#9)": 0x9904070F,
    "maj7(9)": 0x9508070F,
    "add11": 0xB100070F,
    "(#11)": 0xD100070F,
    "(b13)": 0x9101070F,
    "mmaj7": 0x8908070F,
    "m7": 0x8904070F,
    "m7(9,11)": 0xCD04070F,
    "aug7(9,11)": 0x3505070F,
    "7(9,b13)sus4": 0xA505070F,
    "m(9,13,b5)": 0x4D06070F,
    "7(9)sus4": 0xA504070F,
    "no3(7,9,11,#5)": 0x2505070F,
    "m7(9,11,b13)": 0xAD05070F,
    "m7b5(13)": 0x4906070F,
    "maj7(9)sus4": 0xA508070F,
}

# Replacement codes when the chord carries a slash bass.
SLASH_CODES: Dict[str, int] = {
    "": 0x91000103,
}

# Descriptor prefix byte is 0x02 unless overridden; 0x03 also sets the
# 0x8000 flag on the position field.
DEFAULT_DESCRIPTOR_PREFIX = 0x02
DESCRIPTOR_PREFIX_OVERRIDES: Dict[str, int] = {
    "6(9,11)b5": 0x03,
}

QUALITY_INTERVALS: Dict[str, Tuple[int, ...]] = {
    pattern.suffix: pattern.intervals for pattern in CHORD_PATTERNS
}

CODE_TO_QUALITY: Dict[int, str] = {
    **{code: quality for quality, code in DESCRIPTOR_CODES.items()},
    **{code: quality for quality, code in SLASH_CODES.items()},
}


@dataclass(frozen=True)
class QualityText:
    text: str  # lowercased, whitespace removed
    base: str  # text with the first parenthesised group removed
    tokens: Tuple[str, ...]  # comma-separated entries of that group

    @classmethod
    def from_string(cls, raw: str) -> "QualityText":
        text = re.sub(r"\s+", "", (raw or "").lower())
        match = re.search(r"\(([^)]+)\)", text)
        tokens = tuple(match.group(1).split(",")) if match else ()
        base = re.sub(r"\([^)]*\)", "", text, count=1) if match else text
        return cls(text=text, base=base, tokens=tokens)


Rule = Tuple[Callable[[QualityText], bool], str]

QUALITY_RULES: List[Rule] = [
    (lambda q: q.text == "maj", ""),
    (lambda q: q.text in ("min", "minor"), "m"),
    (lambda q: q.text == "5", "5"),
    (lambda q: q.text.startswith("no3(") and "7,9,11,#5" in q.text, "no3(7,9,11,#5)"),
    (lambda q: q.text.startswith("no3(") and "b5" in q.text, "no3(b5)"),
    (
        lambda q: q.text.startswith("7(")
        and "sus4" in q.base
        and "9" in q.tokens
        and "b13" in q.tokens,
        "7(9,b13)sus4",
    ),
    (lambda q: q.text.startswith("7(") and "sus4" in q.base and "9" in q.tokens, "7(9)sus4"),
    (
        lambda q: q.text.startswith("7(") and {"9", "#11", "13"}.issubset(q.tokens),
        "7(9,#11,13)",
    ),
    (lambda q: q.text.startswith("m7(") and "9,11,b13" in q.text, "m7(9,11,b13)"),
    (
        lambda q: q.text.startswith("m7(") and ("9,11" in q.text or "9,#11" in q.text),
        "m7(9,11)",
    ),
    (lambda q: q.text.startswith("m(") and "9,13,b5" in q.text, "m(9,13,b5)"),
    (lambda q: q.text.startswith("aug7") and "9,11" in q.text, "aug7(9,11)"),
    (
        lambda q: q.text.startswith("maj7") and "9" in q.text and "sus4" in q.text,
        "maj7(9)sus4",
    ),
    (lambda q: q.text.startswith("maj7") and "9" in q.text, "maj7(9)"),
    (lambda q: "7,9,b13" in q.text and "sus4" in q.text, "7(9,b13)sus4"),
    (lambda q: "7,9" in q.text and "sus4" in q.text, "7(9)sus4"),
    (
        lambda q: "7,9,#11,13" in q.text
        or ("13" in q.text and "#11" in q.text and "7" in q.text),
        "7(9,#11,13)",
    ),
    (
        lambda q: q.text.startswith("6(") and "9,11" in q.text and "b5" in q.text,
        "6(9,11)b5",
    ),
    (lambda q: q.text.startswith("dim7") and "b9" in q.text, "dim7(b9)"),
    (lambda q: q.text.startswith("m7b5") and "13" in q.text, "m7b5(13)"),
    (lambda q: q.text.startswith("mmaj7"), "mmaj7"),
    (lambda q: q.text in ("(b5)", "b5"), "(b5)"),
    (lambda q: q.text in ("(#11)", "#11"), "(#11)"),
    (lambda q: q.text in ("(b13)", "b13"), "(b13)"),
    (lambda q: q.text.startswith("add11"), "add11"),
    (lambda q: q.text.startswith("7(") and "b9" in q.text, "7(b9)"),
    (lambda q: q.text.startswith("7(") and "#9" in q.text, "7(#9)"),
    (lambda q: q.text == "7b9", "7(b9)"),
    (lambda q: q.text == "7#9", "7(#9)"),
    (lambda q: q.text.startswith("maj7"), "maj7"),
    (lambda q: q.text == "7", "7"),
    (lambda q: q.text == "9", "9"),
    (lambda q: q.text == "6", "6"),
    (lambda q: q.text.startswith("sus2"), "sus2"),
    (lambda q: q.text.startswith("sus4"), "sus4"),
    (lambda q: q.text.startswith("dim"), "dim"),
    (lambda q: q.text.startswith("aug"), "aug"),
    (lambda q: q.text.startswith("m7"), "m7"),
    (lambda q: q.text == "m", "m"),
    (lambda q: q.text.startswith("m"), "m"),
]


def normalize_quality(raw: str) -> Optional[str]:
    """Return the canonical quality for ``raw``, or None if no rule matches."""
    quality = QualityText.from_string(raw)
    if not quality.text:
        return ""
    for predicate, canonical in QUALITY_RULES:
        if predicate(quality):
            return canonical
    return None


@dataclass(frozen=True)
class ParsedChord:
    root: int  # pitch class 0-11
    quality: str  # canonical quality, key into DESCRIPTOR_CODES
    bass: Optional[int] = None

    @property
    def has_slash(self) -> bool:
        return self.bass is not None and self.bass != self.root


_CHORD_RE = re.compile(r"^([A-G])([b#]?)(.*)$")
_BASS_RE = re.compile(r"^([A-G])([b#]?)$")


def parse_chord_name(label: str) -> Optional[ParsedChord]:
    """Split ``<root><quality>[/<bass>]`` into pitch classes and a quality.

    Returns None for ``N.C.``, an empty label, an unknown root or an
    unrecognized quality.  An unparseable bass is ignored.
    """
    if not label or label == NO_CHORD:
        return None
    base, _, bass_text = label.partition("/")
    match = _CHORD_RE.match(base)
    if not match:
        return None
    root = ROOT_TO_PC.get(match.group(1) + match.group(2))
    if root is None:
        return None
    quality = normalize_quality(match.group(3))
    if quality is None:
        return None

    bass = None
    if bass_text:
        bass_match = _BASS_RE.match(bass_text)
        if bass_match:
            bass = ROOT_TO_PC.get(bass_match.group(1) + bass_match.group(2))
    return ParsedChord(root=root, quality=quality, bass=bass)


def build_chord_notes(root: int, quality: str, bass: Optional[int] = None) -> List[int]:
    """Voice a chord: low root, optional slash bass below it, intervals an octave up."""
    intervals = QUALITY_INTERVALS.get(quality, QUALITY_INTERVALS[""])
    low_root = (36 if root >= 7 else 48) + root
    notes: List[int] = []
    if bass is not None and bass != root:
        low_bass = (36 if bass >= 7 else 48) + bass
        if low_bass >= low_root:
            low_bass -= 12
        notes.append(low_bass)
    notes.append(low_root)
    notes.extend(low_root + 12 + interval for interval in intervals)
    return [note for note in dict.fromkeys(notes) if 0 <= note <= 127]
