"""Read chord descriptors and note records back out of a Sequ blob.

Only the record kinds written by ``sequ_writer`` are understood.  A
descriptor takes the position of the most recent position marker; the
slash bass is not part of the descriptor, so decoded labels carry root
and quality only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .chords import note_names
from .quality import CODE_TO_QUALITY
from .structs import SequRecord, parse_records


@dataclass(frozen=True)
class DecodedChord:
    position: int
    root: int
    code: int
    prefix: int
    time: int
    quality: Optional[str]  # None when the code is not in the table

    def label(self, prefer_flats: bool = True) -> Optional[str]:
        if self.quality is None:
            return None
        return note_names(prefer_flats)[self.root % 12] + self.quality


@dataclass(frozen=True)
class DecodedNote:
    position: int
    note: int
    length: int


def read_chord_descriptors(blob: bytes) -> List[DecodedChord]:
    """Decode every descriptor record that follows a position marker.

    Parameters
    ----------
    blob : bytes
        Sequ chunk contents starting with the ``qSvE`` signature.  Zero
        padding after the terminator is ignored.
    """
    chords: List[DecodedChord] = []
    position: Optional[int] = None
    for record in parse_records(blob):
        if record.is_terminator:
            break
        if record.is_marker:
            position = record.position
            continue
        if record.is_descriptor and position is not None:
            chords.append(_decode_descriptor(record, position))
    return chords


def _decode_descriptor(record: SequRecord, position: int) -> DecodedChord:
    return DecodedChord(
        position=position,
        root=(record.w1 >> 16) & 0xFF,
        code=record.w0,
        prefix=(record.w1 >> 24) & 0xFF,
        time=record.w3,
        quality=CODE_TO_QUALITY.get(record.w0),
    )


def read_note_records(blob: bytes) -> List[DecodedNote]:
    """Pair each note-on record with the note-length record that follows it."""
    notes: List[DecodedNote] = []
    pending: Optional[SequRecord] = None
    for record in parse_records(blob):
        if record.is_terminator:
            break
        if record.is_note_on:
            pending = record
        elif record.is_note_length and pending is not None:
            notes.append(
                DecodedNote(
                    position=pending.position,
                    note=(pending.w3 >> 24) & 0x7F,
                    length=(record.w3 >> 16) & 0xFFFF,
                )
            )
            pending = None
    return notes
