"""Identify chords in a time-ordered note stream.

Detection sweeps tick groups while counting active pitches.  A window
opens at a tick with a note-on while no window is open, and closes at
the first event past ``start + window_ticks`` or when a tick group
leaves nothing sounding.  The pitches sounding at close time are scored
against ``CHORD_PATTERNS`` for every candidate root.

Scoring: a pattern matches when all of its intervals are present;
``score = priority * 10 - extra_tones``, minus 2 when the root pitch
class itself is not sounding.  The first (root, pattern) pair reaching
the best score wins.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .midi import NoteEvent
from .options import DEFAULT_OPTIONS, ConversionOptions

log = logging.getLogger(__name__)

NO_CHORD = "N.C."

NOTE_NAMES_SHARP = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")
NOTE_NAMES_FLAT = ("C", "Db", "D", "Eb", "E", "F", "Gb", "G", "Ab", "A", "Bb", "B")


@dataclass(frozen=True)
class ChordPattern:
    suffix: str
    intervals: Tuple[int, ...]
    priority: int


# Order matters: equal scores keep the earlier entry.
CHORD_PATTERNS: Tuple[ChordPattern, ...] = (
    ChordPattern("7(9,#11,13)", (0, 2, 4, 6, 7, 9, 10), 7),
    ChordPattern("m7(9,11,b13)", (0, 2, 3, 5, 7, 8, 10), 7),
    ChordPattern("6(9,11)b5", (0, 2, 4, 5, 6, 9), 6),
    ChordPattern("m(9,13,b5)", (0, 2, 3, 6, 9, 10), 6),
    ChordPattern("aug7(9,11)", (0, 2, 4, 5, 8, 10), 6),
    ChordPattern("7(9,b13)sus4", (0, 2, 5, 7, 8, 10), 6),
    ChordPattern("m7(9,11)", (0, 2, 3, 5, 7, 10), 6),
    ChordPattern("maj7(9)", (0, 2, 4, 7, 11), 6),
    ChordPattern("9", (0, 2, 4, 7, 10), 6),
    ChordPattern("7(b9)", (0, 1, 4, 7, 10), 6),
    ChordPattern("7(#9)", (0, 3, 4, 7, 10), 6),
    ChordPattern("7(9)sus4", (0, 2, 5, 7, 10), 6),
    ChordPattern("no3(7,9,11,#5)", (0, 2, 5, 8, 10), 6),
    ChordPattern("maj7(9)sus4", (0, 2, 5, 7, 11), 6),
    ChordPattern("m7b5(13)", (0, 3, 6, 9, 10), 6),
    ChordPattern("dim7(b9)", (0, 1, 3, 6, 9), 6),
    ChordPattern("maj7", (0, 4, 7, 11), 5),
    ChordPattern("7", (0, 4, 7, 10), 5),
    ChordPattern("m7", (0, 3, 7, 10), 5),
    ChordPattern("6", (0, 4, 7, 9), 5),
    ChordPattern("mmaj7", (0, 3, 7, 11), 5),
    ChordPattern("(b13)", (0, 4, 7, 8), 4),
    ChordPattern("add11", (0, 4, 5, 7), 4),
    ChordPattern("(#11)", (0, 4, 6, 7), 4),
    ChordPattern("aug", (0, 4, 8), 4),
    ChordPattern("dim", (0, 3, 6), 4),
    ChordPattern("(b5)", (0, 4, 6), 4),
    ChordPattern("no3(b5)", (0, 6), 4),
    ChordPattern("sus2", (0, 2, 7), 4),
    ChordPattern("sus4", (0, 5, 7), 4),
    ChordPattern("", (0, 4, 7), 4),
    ChordPattern("m", (0, 3, 7), 4),
    ChordPattern("5", (0, 7), 3),
)


@dataclass(frozen=True)
class ChordEvent:
    tick: int
    label: str

    @property
    def is_no_chord(self) -> bool:
        return self.label == NO_CHORD


def note_names(prefer_flats: bool) -> Tuple[str, ...]:
    return NOTE_NAMES_FLAT if prefer_flats else NOTE_NAMES_SHARP


def identify_chord(
    active_notes: Sequence[int],
    options: ConversionOptions = DEFAULT_OPTIONS,
) -> Optional[str]:
    """Name the chord formed by ``active_notes``.

    Parameters
    ----------
    active_notes : sequence of int
        MIDI pitches currently sounding, in any order.
    options : ConversionOptions
        Uses ``min_notes``, ``allow_extensions``, ``prefer_flats`` and
        ``use_slash``.

    Returns
    -------
    str or None
        ``<root><suffix>[/<bass>]``, or None when there are fewer than
        ``min_notes`` pitch classes or no pattern matches.
    """
    if not active_notes:
        return None
    pitches = sorted(active_notes)
    pitch_classes = {pitch % 12 for pitch in pitches}
    if len(pitch_classes) < options.min_notes:
        return None

    best: Optional[Tuple[int, ChordPattern, int]] = None
    for root in range(12):
        intervals = {(pc - root) % 12 for pc in pitch_classes}
        for pattern in CHORD_PATTERNS:
            if not intervals.issuperset(pattern.intervals):
                continue
            extra = len(intervals) - len(pattern.intervals)
            if extra and not options.allow_extensions:
                continue
            score = pattern.priority * 10 - extra
            if root not in pitch_classes:
                score -= 2
            if best is None or score > best[2]:
                best = (root, pattern, score)

    if best is None:
        return None
    root, pattern, _ = best
    names = note_names(options.prefer_flats)
    label = names[root] + pattern.suffix
    bass = pitches[0] % 12
    if options.use_slash and bass != root:
        label += "/" + names[bass]
    return label


def chord_window_ticks(ppq: int, fraction: float = 0.75) -> int:
    return max(1, round(ppq * fraction))


def detect_chords(
    events: Sequence[NoteEvent],
    options: ConversionOptions = DEFAULT_OPTIONS,
    window_ticks: int = 1,
) -> List[ChordEvent]:
    """Sweep sorted note events and emit one chord per detection window."""
    active: Dict[int, int] = {}
    chords: List[ChordEvent] = []
    span = max(1, round(window_ticks))
    window_start: Optional[int] = None
    last_label: Optional[str] = None

    def close_window(sounding: List[int]) -> None:
        nonlocal window_start, last_label
        label = identify_chord(sounding, options)
        log.debug("window at tick %s: pitches %s -> %r", window_start, sounding, label)
        if label != last_label and (label or options.emit_nc):
            chords.append(ChordEvent(tick=window_start, label=label or NO_CHORD))
            last_label = label
        window_start = None

    idx = 0
    while idx < len(events):
        tick = events[idx].tick
        if window_start is not None and tick > window_start + span:
            close_window(sorted(active))

        before = sorted(active)
        had_note_on = False
        while idx < len(events) and events[idx].tick == tick:
            event = events[idx]
            count = active.get(event.note, 0)
            if event.is_on:
                active[event.note] = count + 1
                had_note_on = True
            elif count > 1:
                active[event.note] = count - 1
            else:
                active.pop(event.note, None)
            idx += 1

        if window_start is not None and not active:
            close_window(before)
        elif window_start is None and had_note_on:
            window_start = tick

    if window_start is not None:
        close_window(sorted(active))
    return merge_duplicate_chords(chords)


def merge_duplicate_chords(chords: Sequence[ChordEvent]) -> List[ChordEvent]:
    merged: List[ChordEvent] = []
    for chord in chords:
        if merged and merged[-1].label == chord.label:
            continue
        merged.append(chord)
    return merged


def chord_ticks(chords: Sequence[ChordEvent]) -> List[int]:
    return [max(0, round(chord.tick)) for chord in chords]


def build_output_name(chords: Sequence[ChordEvent]) -> str:
    """File name listing the detected labels, e.g. ``C,Am,F-C.chords.aif``."""
    raw = ",".join(chord.label for chord in chords) if chords else "no-chords"
    cleaned = re.sub(r"\s+", "", raw)
    cleaned = re.sub(r"[\\/]+", "-", cleaned)
    cleaned = re.sub(r"[^a-z0-9,#b\-_.]", "", cleaned, flags=re.IGNORECASE)
    return (cleaned or "chords") + ".chords.aif"
