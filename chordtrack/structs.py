"""Sequ chord-track record layout and template calibration.

A Sequ blob is the 4-byte signature ``qSvE`` followed by 16-byte records
of four big-endian u32 words.  Record kinds observed in host-written files:

  position marker  32000000  pos<<16      00000000  07000001
  filler           00000000  00000088     00000000  00000000
  marker variant   70000000  pos<<16      00000000  67000001
  descriptor       code      pp rr 00 B2  00000000  time
  note-on          90000000  pos<<16      00009264  nn000080
  note length      40000000  00000089     00000000  len<<16
  terminator       F1000000  FFFFFF3F     00000000  00000000

``pos`` is a 15-bit position (bit 15 is a flag), ``pp`` the descriptor
prefix and ``rr`` the root pitch class.

Positions advance by ``position_step`` per 4/4 bar.  The step, the first
position and the descriptor time words are not documented; ``calibrate``
recovers them from a host-written reference blob.
"""

from __future__ import annotations

import logging
import struct
import warnings
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import CalibrationDegenerate, FormatError

log = logging.getLogger(__name__)

SEQU_SIGNATURE = b"qSvE"
RECORD_SIZE = 16

MARKER_WORD = 0x3200_0000
MARKER_TAIL = 0x0700_0001
FILLER_WORD1 = 0x0000_0088
MARKER_VARIANT_WORD = 0x7000_0000
MARKER_VARIANT_TAIL = 0x6700_0001
DESCRIPTOR_TAG = 0xB2
NOTE_ON_WORD = 0x9000_0000
NOTE_ON_WORD2 = 0x0000_9264
NOTE_LENGTH_WORD = 0x4000_0000
NOTE_LENGTH_WORD1 = 0x0000_0089
TERMINATOR_WORD = 0xF100_0000
TERMINATOR_WORD1 = 0xFFFF_FF3F

POSITION_MASK = 0x7FFF
POSITION_FLAG = 0x8000
MAX_NOTE_LENGTH = 0x7FFF

DEFAULT_POSITION_BASE = 0x96
DEFAULT_POSITION_STEP = 0x0F
DEFAULT_TIME_BASE = 0x8020_B50A


@dataclass(frozen=True)
class SequRecord:
    w0: int
    w1: int
    w2: int = 0
    w3: int = 0

    def to_bytes(self) -> bytes:
        return struct.pack(
            ">IIII",
            self.w0 & 0xFFFF_FFFF,
            self.w1 & 0xFFFF_FFFF,
            self.w2 & 0xFFFF_FFFF,
            self.w3 & 0xFFFF_FFFF,
        )

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> "SequRecord":
        return cls(*struct.unpack_from(">IIII", data, offset))

    @property
    def is_marker(self) -> bool:
        return self.w0 == MARKER_WORD

    @property
    def is_descriptor(self) -> bool:
        return (self.w1 & 0xFF) == DESCRIPTOR_TAG

    @property
    def is_note_on(self) -> bool:
        return self.w0 == NOTE_ON_WORD and self.w2 == NOTE_ON_WORD2

    @property
    def is_note_length(self) -> bool:
        return self.w0 == NOTE_LENGTH_WORD and self.w1 == NOTE_LENGTH_WORD1

    @property
    def is_terminator(self) -> bool:
        return self.w0 == TERMINATOR_WORD and self.w1 == TERMINATOR_WORD1

    @property
    def position(self) -> int:
        """Position field of marker and note-on records (flag bit cleared)."""
        return (self.w1 >> 16) & POSITION_MASK


def position_word(position: int, flag: bool = False) -> int:
    value = position | POSITION_FLAG if flag else position
    return (value & 0xFFFF) << 16


def marker_record(position_field: int) -> SequRecord:
    return SequRecord(MARKER_WORD, position_field, 0, MARKER_TAIL)


def filler_record() -> SequRecord:
    return SequRecord(0, FILLER_WORD1, 0, 0)


def marker_variant_record(position_field: int) -> SequRecord:
    return SequRecord(MARKER_VARIANT_WORD, position_field, 0, MARKER_VARIANT_TAIL)


def descriptor_record(code: int, prefix: int, root: int, time_word: int) -> SequRecord:
    word1 = ((prefix & 0xFF) << 24) | ((root & 0xFF) << 16) | DESCRIPTOR_TAG
    return SequRecord(code, word1, 0, time_word)


def note_on_record(position_field: int, note: int) -> SequRecord:
    return SequRecord(NOTE_ON_WORD, position_field, NOTE_ON_WORD2, ((note & 0x7F) << 24) | 0x80)


def note_length_record(length: int) -> SequRecord:
    return SequRecord(NOTE_LENGTH_WORD, NOTE_LENGTH_WORD1, 0, (min(length, MAX_NOTE_LENGTH) & 0xFFFF) << 16)


def terminator_record() -> SequRecord:
    return SequRecord(TERMINATOR_WORD, TERMINATOR_WORD1, 0, 0)


def parse_records(blob: bytes) -> List[SequRecord]:
    """Split a Sequ blob into records; a trailing partial record is ignored."""
    if blob[:4] != SEQU_SIGNATURE:
        raise FormatError(f"expected Sequ signature {SEQU_SIGNATURE!r}, got {blob[:4]!r}")
    count = (len(blob) - 4) // RECORD_SIZE
    return [SequRecord.from_bytes(blob, 4 + i * RECORD_SIZE) for i in range(count)]


def records_to_bytes(records: Iterable[SequRecord]) -> bytes:
    return SEQU_SIGNATURE + b"".join(record.to_bytes() for record in records)


@dataclass(frozen=True)
class DescriptorSample:
    position: int
    time: int
    code: int


def find_descriptor_samples(records: Iterable[SequRecord]) -> Tuple[List[int], List[DescriptorSample]]:
    """Return marker positions and (position, time, code) for each descriptor.

    A descriptor takes the position of the most recent marker; descriptors
    before the first marker are ignored.
    """
    positions: List[int] = []
    samples: List[DescriptorSample] = []
    current: Optional[int] = None
    for record in records:
        if record.is_marker:
            current = record.position
            positions.append(current)
        if record.is_descriptor and current is not None:
            samples.append(DescriptorSample(position=current, time=record.w3, code=record.w0))
    return positions, samples


@dataclass(frozen=True)
class SequProfile:
    """Encoding parameters recovered from a reference Sequ blob."""

    header_records: Tuple[SequRecord, ...] = ()
    position_base: int = DEFAULT_POSITION_BASE
    position_step: int = DEFAULT_POSITION_STEP
    time_base: int = DEFAULT_TIME_BASE
    time_scale: float = 0.0
    descriptor_times: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))
    stable_codes: FrozenSet[int] = frozenset()
    max_records: Optional[int] = None
    degenerate: bool = False

    def ticks_per_position(self, ppq: int) -> float:
        return 4 * ppq / self.position_step

    def position_for_tick(self, tick: float, ppq: int) -> int:
        return self.position_base + round(tick / self.ticks_per_position(ppq))

    def linear_time(self, position: int) -> int:
        return round(self.time_base + (position - self.position_base) * self.time_scale)

    def time_for_code(self, code: int) -> Tuple[int, bool]:
        """Time word for a descriptor code and whether it is provisional.

        Codes seen in the reference reuse their majority time.  Other codes
        fall back to ``time_base``; the linear relation is not trusted for
        codes the reference never exercised.
        """
        if code in self.descriptor_times:
            return self.descriptor_times[code], False
        return self.time_base, True


def _most_frequent_step(positions: List[int]) -> Optional[int]:
    diffs = Counter(b - a for a, b in zip(positions, positions[1:]) if b - a > 0)
    if not diffs:
        return None
    return diffs.most_common(1)[0][0]


def _smallest_gap(positions: List[int]) -> Optional[int]:
    unique = sorted(set(positions))
    gaps = [b - a for a, b in zip(unique, unique[1:])]
    return min(gaps) if gaps else None


def calibrate(sequ_bytes: bytes) -> SequProfile:
    """Infer a ``SequProfile`` from a host-written Sequ blob.

    Parameters
    ----------
    sequ_bytes : bytes
        Contents of the reference template's Sequ chunk, signature included.

    Returns
    -------
    SequProfile
        ``degenerate`` is set when no descriptor was found; defaults are
        used for anything that could not be measured.
    """
    records = parse_records(sequ_bytes)
    positions, samples = find_descriptor_samples(records)

    position_base = DEFAULT_POSITION_BASE
    position_step: Optional[int] = None
    if samples:
        position_base = samples[0].position
        position_step = _most_frequent_step([s.position for s in samples])
    elif positions:
        position_base = min(positions)
        position_step = _smallest_gap(positions)
    if not position_step:
        position_step = DEFAULT_POSITION_STEP

    time_base = DEFAULT_TIME_BASE
    time_scale = 0.0
    if samples:
        first = samples[0]
        time_base = first.time
        pivot = next(
            (s for s in samples if s.time != first.time and s.position != first.position),
            None,
        )
        if pivot is not None:
            time_scale = (pivot.time - first.time) / (pivot.position - first.position)

    by_code: Dict[int, Counter] = {}
    for sample in samples:
        by_code.setdefault(sample.code, Counter())[sample.time] += 1
    descriptor_times = {code: counts.most_common(1)[0][0] for code, counts in by_code.items()}
    stable_codes = frozenset(code for code, counts in by_code.items() if len(counts) == 1)

    degenerate = not samples
    if degenerate:
        message = "reference Sequ blob has no descriptor records; using default encoding parameters"
        warnings.warn(message, CalibrationDegenerate, stacklevel=2)
        log.warning(message)

    profile = SequProfile(
        header_records=tuple(records[:2]),
        position_base=position_base,
        position_step=position_step,
        time_base=time_base,
        time_scale=time_scale,
        descriptor_times=MappingProxyType(descriptor_times),
        stable_codes=stable_codes,
        max_records=len(records),
        degenerate=degenerate,
    )
    log.debug(
        "calibrated Sequ profile: base=0x%X step=0x%X time_base=0x%08X scale=%s codes=%d records=%d",
        profile.position_base,
        profile.position_step,
        profile.time_base,
        profile.time_scale,
        len(descriptor_times),
        len(records),
    )
    return profile
