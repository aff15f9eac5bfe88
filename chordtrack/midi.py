"""Read and write Standard MIDI Files without a MIDI library.

File layout (all integers big-endian):

  ``MThd`` u32 header_len, u16 format, u16 track_count, u16 division
  ``MTrk`` u32 length, then ``(varlen delta, status, data)`` events

Division with the top bit set is SMPTE time, which is rejected.

Events are kept as their fully expanded byte encoding (``raw``): channel
messages always carry an explicit status byte, meta and sysex events keep
their length-prefixed payload so they survive re-encoding unchanged.
Meta and sysex events cancel running status.

Variable-length integers: 7 bits per byte, most significant group first,
top bit set on every byte except the last, at most 4 bytes.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import FormatError

HEADER_TAG = b"MThd"
TRACK_TAG = b"MTrk"
HEADER_LENGTH = 6
DEFAULT_TEMPO = 500_000  # us per quarter note (120 BPM)
DRUM_CHANNEL = 9
MAX_VARLEN = 0x0FFF_FFFF
MAX_VARLEN_BYTES = 4

META = 0xFF
SYSEX = 0xF0
SYSEX_ESCAPE = 0xF7
META_TEMPO = 0x51
META_END_OF_TRACK = 0x2F
END_OF_TRACK = b"\xFF\x2F\x00"

NOTE_OFF = 0x80
NOTE_ON = 0x90
PROGRAM_CHANGE = 0xC0
CHANNEL_PRESSURE = 0xD0


def read_varlen(data: bytes, offset: int) -> Tuple[int, int]:
    """Decode a variable-length integer at ``offset``.

    Returns ``(value, new_offset)``.
    """
    value = 0
    for i in range(MAX_VARLEN_BYTES):
        pos = offset + i
        if pos >= len(data):
            raise FormatError(f"truncated variable-length integer at offset {offset}")
        byte = data[pos]
        value = (value << 7) | (byte & 0x7F)
        if not byte & 0x80:
            return value, pos + 1
    raise FormatError(
        f"variable-length integer at offset {offset} exceeds {MAX_VARLEN_BYTES} bytes"
    )


def write_varlen(value: int) -> bytes:
    if value < 0 or value > MAX_VARLEN:
        raise ValueError(f"value {value} cannot be encoded as a variable-length integer")
    out = bytearray([value & 0x7F])
    value >>= 7
    while value:
        out.insert(0, (value & 0x7F) | 0x80)
        value >>= 7
    return bytes(out)


@dataclass(frozen=True)
class NoteEvent:
    """A note-on or note-off at an absolute tick."""

    tick: int
    note: int
    channel: int
    is_on: bool
    velocity: int = 0


@dataclass(frozen=True)
class TempoPoint:
    tick: int
    us_per_quarter: int


@dataclass(frozen=True)
class MidiEvent:
    """One track event at an absolute tick.

    ``order`` is the event's position in its source track and breaks ties
    between events sharing a tick when the track is re-encoded.
    """

    tick: int
    order: int
    raw: bytes

    @property
    def status(self) -> int:
        return self.raw[0]

    @property
    def is_channel(self) -> bool:
        return self.status < 0xF0

    @property
    def channel(self) -> Optional[int]:
        return self.status & 0x0F if self.is_channel else None

    @property
    def is_note(self) -> bool:
        return self.is_channel and (self.status & 0xF0) in (NOTE_OFF, NOTE_ON)

    @property
    def is_note_on(self) -> bool:
        """Note-on with non-zero velocity; velocity 0 counts as note-off."""
        return self.is_channel and (self.status & 0xF0) == NOTE_ON and self.raw[2] > 0

    @property
    def is_note_off(self) -> bool:
        return self.is_note and not self.is_note_on

    @property
    def note(self) -> Optional[int]:
        return self.raw[1] if self.is_note else None

    @property
    def velocity(self) -> Optional[int]:
        return self.raw[2] if self.is_note else None

    @property
    def is_meta(self) -> bool:
        return self.status == META

    @property
    def meta_type(self) -> Optional[int]:
        return self.raw[1] if self.is_meta else None

    @property
    def is_end_of_track(self) -> bool:
        return self.is_meta and self.raw[1] == META_END_OF_TRACK

    def meta_payload(self) -> bytes:
        if not self.is_meta:
            raise ValueError(f"status 0x{self.status:02X} is not a meta event")
        _, start = read_varlen(self.raw, 2)
        return self.raw[start:]

    def at_tick(self, tick: int) -> "MidiEvent":
        return replace(self, tick=tick)


def encode_track(events: Iterable[MidiEvent]) -> bytes:
    """Encode events as ``varlen(delta) + raw``, stable-sorted by (tick, order)."""
    buf = bytearray()
    last_tick = 0
    for event in sorted(events, key=lambda e: (e.tick, e.order)):
        buf += write_varlen(max(0, event.tick - last_tick))
        buf += event.raw
        last_tick = event.tick
    return bytes(buf)


@dataclass(frozen=True)
class MidiFile:
    format: int
    division: int
    tracks: List[List[MidiEvent]] = field(default_factory=list)

    @property
    def ppq(self) -> int:
        return self.division

    @classmethod
    def from_bytes(cls, data: bytes) -> "MidiFile":
        return parse_midi(data)

    def to_bytes(self) -> bytes:
        parts = [
            struct.pack(
                ">4sIHHH",
                HEADER_TAG,
                HEADER_LENGTH,
                self.format,
                len(self.tracks),
                self.division,
            )
        ]
        for track in self.tracks:
            body = encode_track(track)
            parts.append(struct.pack(">4sI", TRACK_TAG, len(body)))
            parts.append(body)
        return b"".join(parts)


def _read_header(data: bytes) -> Tuple[int, int, int, int]:
    """Return ``(format, track_count, division, first_track_offset)``."""
    if len(data) < 8 + HEADER_LENGTH or data[:4] != HEADER_TAG:
        raise FormatError(f"expected {HEADER_TAG!r} header tag, got {data[:4]!r}")
    header_len, fmt, track_count, division = struct.unpack_from(">IHHH", data, 4)
    if header_len < HEADER_LENGTH:
        raise FormatError(f"header length {header_len} is shorter than {HEADER_LENGTH}")
    if division & 0x8000:
        raise FormatError("SMPTE time division is not supported")
    if division == 0:
        raise FormatError("ticks per quarter note must be non-zero")
    return fmt, track_count, division, 8 + header_len


def _read_payload(body: bytes, pos: int, track_index: int) -> Tuple[bytes, int]:
    length, start = read_varlen(body, pos)
    end = start + length
    if end > len(body):
        raise FormatError(
            f"track {track_index}: payload of {length} bytes runs past end of track"
        )
    return body[start:end], end


def _parse_track(data: bytes, offset: int, track_index: int) -> Tuple[List[MidiEvent], int]:
    if data[offset : offset + 4] != TRACK_TAG or offset + 8 > len(data):
        raise FormatError(
            f"track {track_index}: expected {TRACK_TAG!r} chunk at offset {offset}"
        )
    (length,) = struct.unpack_from(">I", data, offset + 4)
    start = offset + 8
    end = start + length
    if end > len(data):
        raise FormatError(
            f"track {track_index}: chunk length {length} runs past end of file"
        )
    body = data[start:end]

    events: List[MidiEvent] = []
    pos = 0
    tick = 0
    running: Optional[int] = None

    while pos < len(body):
        delta, pos = read_varlen(body, pos)
        tick += delta
        if pos >= len(body):
            raise FormatError(f"track {track_index}: event truncated after delta time")

        status = body[pos]
        if status < 0x80:
            if running is None:
                raise FormatError(
                    f"track {track_index}: running status without a prior status byte "
                    f"at offset {start + pos}"
                )
            status = running
        else:
            pos += 1

        if status == META:
            running = None
            if pos >= len(body):
                raise FormatError(f"track {track_index}: meta event missing type byte")
            meta_type = body[pos]
            payload, pos = _read_payload(body, pos + 1, track_index)
            raw = bytes([META, meta_type]) + write_varlen(len(payload)) + payload
        elif status in (SYSEX, SYSEX_ESCAPE):
            running = None
            payload, pos = _read_payload(body, pos, track_index)
            raw = bytes([status]) + write_varlen(len(payload)) + payload
        elif status >= 0xF0:
            raise FormatError(
                f"track {track_index}: unsupported system status 0x{status:02X}"
            )
        else:
            running = status
            size = 1 if (status & 0xF0) in (PROGRAM_CHANGE, CHANNEL_PRESSURE) else 2
            if pos + size > len(body):
                raise FormatError(f"track {track_index}: channel message truncated")
            raw = bytes([status]) + bytes(b & 0x7F for b in body[pos : pos + size])
            pos += size

        events.append(MidiEvent(tick=tick, order=len(events), raw=raw))

    return events, end


def parse_midi(data: bytes) -> MidiFile:
    fmt, track_count, division, offset = _read_header(data)
    tracks: List[List[MidiEvent]] = []
    for index in range(track_count):
        events, offset = _parse_track(data, offset, index)
        tracks.append(events)
    return MidiFile(format=fmt, division=division, tracks=tracks)


def is_midi_bytes(data: Optional[bytes]) -> bool:
    return bool(data) and len(data) >= 4 and data[:4] == HEADER_TAG


def note_events(midi: MidiFile, *, ignore_drums: bool = True) -> List[NoteEvent]:
    """Collect note events from every track in global order.

    Sorted by tick; at equal ticks note-offs come before note-ons so a
    retriggered pitch releases before it re-attacks.  Remaining ties keep
    track order, then position within the track.
    """
    events: List[NoteEvent] = []
    for track in midi.tracks:
        for event in track:
            if not event.is_note:
                continue
            if ignore_drums and event.channel == DRUM_CHANNEL:
                continue
            events.append(
                NoteEvent(
                    tick=event.tick,
                    note=event.note,
                    channel=event.channel,
                    is_on=event.is_note_on,
                    velocity=event.velocity,
                )
            )
    events.sort(key=lambda e: (e.tick, e.is_on))
    return events


def parse_note_events(data: bytes, *, ignore_drums: bool = True) -> Tuple[List[NoteEvent], int]:
    """Parse ``data`` and return ``(note_events, ppq)``."""
    midi = parse_midi(data)
    return note_events(midi, ignore_drums=ignore_drums), midi.ppq


def last_note_tick(events: Sequence[NoteEvent]) -> Optional[int]:
    return max((event.tick for event in events), default=None)


@dataclass(frozen=True)
class MidiTiming:
    ppq: int
    tempos: List[TempoPoint]
    last_tick: int

    def duration_seconds(self) -> float:
        """Wall-clock length up to ``last_tick`` following the tempo map."""
        tempo = DEFAULT_TEMPO
        seconds = 0.0
        prev_tick = 0
        for point in self.tempos:
            if point.tick > prev_tick:
                seconds += (point.tick - prev_tick) / self.ppq * tempo / 1_000_000
                prev_tick = point.tick
            tempo = point.us_per_quarter
        if self.last_tick > prev_tick:
            seconds += (self.last_tick - prev_tick) / self.ppq * tempo / 1_000_000
        return seconds

    def beat_count(self) -> int:
        return max(1, math.ceil(self.last_tick / self.ppq))


def midi_timing(midi: MidiFile) -> MidiTiming:
    tempos: List[TempoPoint] = []
    last_tick = 0
    for track in midi.tracks:
        for event in track:
            if event.meta_type == META_TEMPO:
                payload = event.meta_payload()
                if len(payload) == 3:
                    tempos.append(
                        TempoPoint(tick=event.tick, us_per_quarter=int.from_bytes(payload, "big"))
                    )
        if track:
            last_tick = max(last_tick, track[-1].tick)
    tempos.sort(key=lambda point: point.tick)
    return MidiTiming(ppq=midi.ppq, tempos=tempos, last_tick=last_tick)


def parse_timing(data: bytes) -> MidiTiming:
    return midi_timing(parse_midi(data))
