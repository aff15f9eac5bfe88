"""Synthesize Sequ chord-track blobs.

Each encodable chord becomes a 4-record group:

  marker(pos)  filler  marker variant(pos)  descriptor(code, root, time)

optionally followed by note-on / note-length pairs.  Notes come either
from a voicing of the chord itself (``build_chord_notes``) or from the
original MIDI notes, paired on/off per (channel, pitch).

The blob starts with the two header records copied from the reference
template and ends with a terminator record.  ``profile.max_records`` is
the record capacity of the template chunk; when the requested note
source would overflow it and the other source fits, the other source
is used.  If neither fits the blob is still produced and the container
patcher decides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from .chords import ChordEvent
from .errors import NoChordsEncodedError
from .midi import NoteEvent
from .quality import (
    DEFAULT_DESCRIPTOR_PREFIX,
    DESCRIPTOR_CODES,
    DESCRIPTOR_PREFIX_OVERRIDES,
    SLASH_CODES,
    ParsedChord,
    build_chord_notes,
    parse_chord_name,
)
from .structs import (
    SequProfile,
    SequRecord,
    descriptor_record,
    filler_record,
    marker_record,
    marker_variant_record,
    note_length_record,
    note_on_record,
    position_word,
    records_to_bytes,
    terminator_record,
)

log = logging.getLogger(__name__)

FLAGGED_PREFIX = 0x03
DEFAULT_NOTE_LENGTH = 1  # positions


@dataclass(frozen=True)
class NotePair:
    on_tick: int
    off_tick: int
    note: int
    channel: int


@dataclass(frozen=True)
class SequBuild:
    data: bytes
    encoded_count: int
    record_count: int
    skipped: Tuple[str, ...] = ()
    provisional_codes: FrozenSet[int] = frozenset()
    used_original_notes: bool = False


def pair_notes(events: Sequence[NoteEvent]) -> List[NotePair]:
    """Match note-offs to the most recent open note-on of the same (channel, pitch)."""
    stacks: Dict[Tuple[int, int], List[int]] = {}
    pairs: List[NotePair] = []
    for event in events:
        key = (event.channel, event.note)
        if event.is_on:
            stacks.setdefault(key, []).append(event.tick)
            continue
        stack = stacks.get(key)
        if stack:
            on_tick = stack.pop()
            pairs.append(
                NotePair(on_tick=on_tick, off_tick=event.tick, note=event.note, channel=event.channel)
            )
    pairs.sort(key=lambda pair: pair.on_tick)
    return pairs


def build_note_records(
    events: Sequence[NoteEvent], profile: SequProfile, ppq: int
) -> List[SequRecord]:
    """One note-on + note-length record pair per matched MIDI note."""
    ticks_per_position = profile.ticks_per_position(ppq)
    records: List[SequRecord] = []
    for pair in pair_notes(events):
        position = profile.position_for_tick(pair.on_tick, ppq)
        duration_ticks = max(1, pair.off_tick - pair.on_tick)
        length = max(1, round(duration_ticks / ticks_per_position))
        records.append(note_on_record(position_word(position), pair.note))
        records.append(note_length_record(length))
    return records


def descriptor_code(parsed: ParsedChord) -> int:
    code = DESCRIPTOR_CODES[parsed.quality]
    if parsed.has_slash:
        return SLASH_CODES.get(parsed.quality, code)
    return code


def _voicing_record_count(parsed: Sequence[Optional[ParsedChord]], include_notes: bool) -> int:
    total = 0
    for chord in parsed:
        if chord is None:
            continue
        total += 4
        if include_notes:
            total += 2 * len(build_chord_notes(chord.root, chord.quality, chord.bass))
    return total


def build_sequ_chunk(
    chords: Sequence[ChordEvent],
    profile: SequProfile,
    ppq: int,
    *,
    include_notes: bool = True,
    note_events: Optional[Sequence[NoteEvent]] = None,
    prefer_original_notes: bool = False,
    gate_to_next: bool = True,
    end_tick: Optional[int] = None,
) -> SequBuild:
    """Encode ``chords`` as a Sequ blob.

    Parameters
    ----------
    chords : sequence of ChordEvent
        Detected chords; sorted by tick here.  ``N.C.`` and chords with an
        unrecognized quality are skipped.
    profile : SequProfile
        Calibration of the target template.
    ppq : int
        Ticks per quarter note of the source MIDI.
    include_notes : bool
        Emit note records after the chord groups.
    note_events : sequence of NoteEvent, optional
        MIDI notes available for original-note records.
    prefer_original_notes : bool
        Use ``note_events`` instead of chord voicings when both fit.
    gate_to_next : bool
        Hold voiced notes until the next chord (or ``end_tick``) instead of
        the 1-position default length.
    end_tick : int, optional
        End of the material, used to gate the last chord.

    Raises
    ------
    NoChordsEncodedError
        If no chord could be encoded.
    """
    placed = [
        (chord, profile.position_for_tick(chord.tick, ppq), parse_chord_name(chord.label))
        for chord in sorted(chords, key=lambda c: c.tick)
    ]
    parsed = [entry[2] for entry in placed]
    encodable = sum(1 for chord in parsed if chord is not None)
    header_count = len(profile.header_records)

    original_records: Optional[List[SequRecord]] = None
    if include_notes and note_events:
        original_records = build_note_records(note_events, profile, ppq)

    use_original = prefer_original_notes and original_records is not None
    capacity = profile.max_records
    if include_notes and capacity is not None:
        voicing_estimate = header_count + _voicing_record_count(parsed, True) + 1
        original_estimate = None
        if original_records is not None:
            original_estimate = header_count + 4 * encodable + len(original_records) + 1
        if use_original and original_estimate > capacity and voicing_estimate <= capacity:
            log.warning(
                "original-note records need %d of %d slots; using chord voicings",
                original_estimate,
                capacity,
            )
            use_original = False
        elif (
            not use_original
            and voicing_estimate > capacity
            and original_estimate is not None
            and original_estimate <= capacity
        ):
            log.warning(
                "chord voicings need %d of %d slots; using original-note records",
                voicing_estimate,
                capacity,
            )
            use_original = True

    end_position = profile.position_for_tick(end_tick, ppq) if end_tick is not None else None

    records: List[SequRecord] = list(profile.header_records)
    skipped: List[str] = []
    provisional: set[int] = set()
    encoded = 0

    for index, (chord, position, parsed_chord) in enumerate(placed):
        if parsed_chord is None:
            if not chord.is_no_chord:
                log.warning("skipping chord %r at tick %d: unrecognized quality", chord.label, chord.tick)
                skipped.append(chord.label)
            continue

        code = descriptor_code(parsed_chord)
        prefix = DESCRIPTOR_PREFIX_OVERRIDES.get(parsed_chord.quality, DEFAULT_DESCRIPTOR_PREFIX)
        position_field = position_word(position, flag=prefix == FLAGGED_PREFIX)
        time_word, is_provisional = profile.time_for_code(code)
        if is_provisional and code not in provisional:
            log.warning(
                "descriptor code 0x%08X (%r) not seen in reference; time word 0x%08X is provisional",
                code,
                parsed_chord.quality,
                time_word,
            )
            provisional.add(code)

        records.append(marker_record(position_field))
        records.append(filler_record())
        records.append(marker_variant_record(position_field))
        records.append(descriptor_record(code, prefix, parsed_chord.root, time_word))
        encoded += 1

        if include_notes and not use_original:
            length = DEFAULT_NOTE_LENGTH
            if gate_to_next:
                next_position = placed[index + 1][1] if index + 1 < len(placed) else end_position
                if next_position is not None and next_position > position:
                    length = max(1, next_position - position)
            for note in build_chord_notes(parsed_chord.root, parsed_chord.quality, parsed_chord.bass):
                records.append(note_on_record(position_field, note))
                records.append(note_length_record(length))

    if not encoded:
        raise NoChordsEncodedError("no supported chords to encode")

    if include_notes and use_original:
        records.extend(original_records)
    records.append(terminator_record())

    log.debug(
        "encoded %d chord(s) into %d Sequ records (original notes: %s)",
        encoded,
        len(records),
        use_original,
    )
    return SequBuild(
        data=records_to_bytes(records),
        encoded_count=encoded,
        record_count=len(records),
        skipped=tuple(skipped),
        provisional_codes=frozenset(provisional),
        used_original_notes=include_notes and use_original,
    )
