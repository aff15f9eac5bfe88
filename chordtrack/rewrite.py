"""Shorten note durations in a MIDI file and regenerate its bytes.

Each note-off is matched to the latest open note-on of the same
(channel, pitch).  A matched note of positive length ends at
``onset + max(1, round(duration * factor))``.  With a gate mode and at
least two distinct chord ticks, the end is further tied to the next
chord strictly after the onset:

  TO_NEXT  end = next_chord - 1 (at least onset + 1)
  SCALED   end = min(shortened end, onset + round(span * factor), next_chord - 1)

Per track, events past the last note end are dropped and a single
end-of-track event is placed at that tick (or at ``force_end_tick`` when
later).
"""

from __future__ import annotations

import bisect
import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .midi import END_OF_TRACK, MidiEvent, MidiFile, parse_midi

log = logging.getLogger(__name__)


class GateMode(Enum):
    TO_NEXT = "toNext"
    SCALED = "scaled"


def normalize_chord_ticks(ticks: Optional[Iterable[int]]) -> Optional[List[int]]:
    """Sorted distinct ticks, or None when fewer than two remain."""
    if not ticks:
        return None
    unique = sorted(set(ticks))
    return unique if len(unique) > 1 else None


def next_chord_tick(tick: int, gate_ticks: Optional[Sequence[int]]) -> Optional[int]:
    if not gate_ticks or len(gate_ticks) < 2:
        return None
    idx = bisect.bisect_right(gate_ticks, tick)
    return gate_ticks[idx] if idx < len(gate_ticks) else None


def gated_end(onset: int, end: int, next_tick: int, mode: GateMode, factor: float) -> int:
    clamp = max(onset + 1, next_tick - 1)
    if mode is GateMode.TO_NEXT:
        return clamp
    span_end = onset + max(1, round((next_tick - onset) * factor))
    return min(span_end, end, clamp)


def _trim_tick(events: Sequence[MidiEvent]) -> Optional[int]:
    """Last note-off, else last note-on, else last non end-of-track event."""
    last_off = max((e.tick for e in events if e.is_note_off), default=None)
    if last_off is not None:
        return last_off
    last_on = max((e.tick for e in events if e.is_note_on), default=None)
    if last_on is not None:
        return last_on
    return max((e.tick for e in events if not e.is_end_of_track), default=None)


def rewrite_track(
    events: Sequence[MidiEvent],
    factor: float,
    gate_ticks: Optional[Sequence[int]] = None,
    gate_mode: Optional[GateMode] = None,
    force_end_tick: Optional[int] = None,
) -> List[MidiEvent]:
    stacks: Dict[Tuple[int, int], List[int]] = {}
    rewritten: List[MidiEvent] = []
    for event in events:
        if event.is_note:
            key = (event.channel, event.note)
            if event.is_note_on:
                stacks.setdefault(key, []).append(event.tick)
            elif stacks.get(key):
                onset = stacks[key].pop()
                duration = event.tick - onset
                if duration > 0:
                    end = onset + max(1, round(duration * factor))
                    if gate_mode is not None and gate_ticks:
                        next_tick = next_chord_tick(onset, gate_ticks)
                        if next_tick is not None and next_tick > onset:
                            end = gated_end(onset, end, next_tick, gate_mode, factor)
                    event = event.at_tick(end)
        rewritten.append(event)

    trim = _trim_tick(rewritten)
    end_events = [e for e in rewritten if e.is_end_of_track]
    active = [e for e in rewritten if not e.is_end_of_track]
    if trim is not None:
        active = [e for e in active if e.tick <= trim]
    active.sort(key=lambda e: (e.tick, e.order))

    end_tick = trim if trim is not None else 0
    if force_end_tick is not None and force_end_tick > end_tick:
        end_tick = round(force_end_tick)

    raw = end_events[0].raw if end_events else END_OF_TRACK
    last_order = max((e.order for e in rewritten), default=-1)
    active.append(MidiEvent(tick=end_tick, order=last_order + 1, raw=raw))
    return active


def shorten_midi_notes(
    midi_bytes: bytes,
    factor: float,
    chord_ticks: Optional[Iterable[int]] = None,
    gate_mode: Optional[GateMode] = None,
    force_end_tick: Optional[int] = None,
) -> bytes:
    """Return ``midi_bytes`` re-encoded with shortened (and gated) notes.

    Parameters
    ----------
    midi_bytes : bytes
        Standard MIDI File.
    factor : float
        Multiplier applied to every matched note duration (> 0).
    chord_ticks : iterable of int, optional
        Chord onsets used for gating; ignored with fewer than two distinct.
    gate_mode : GateMode, optional
        None disables gating.
    force_end_tick : int, optional
        Minimum tick for each track's end-of-track event.
    """
    if factor <= 0:
        raise ValueError(f"shortening factor must be positive, got {factor}")
    midi = parse_midi(midi_bytes)
    gate_ticks = normalize_chord_ticks(chord_ticks)
    tracks = [
        rewrite_track(track, factor, gate_ticks, gate_mode, force_end_tick)
        for track in midi.tracks
    ]
    log.debug(
        "rewrote %d track(s) with factor %s, gate %s over %d chord tick(s)",
        len(tracks),
        factor,
        gate_mode.value if gate_mode else None,
        len(gate_ticks or ()),
    )
    return MidiFile(format=midi.format, division=midi.division, tracks=tracks).to_bytes()
