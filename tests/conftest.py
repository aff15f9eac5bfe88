"""Shared fixtures: synthetic AIFF templates and MIDI built with mido."""

from __future__ import annotations

import io
import math
import struct
from pathlib import Path
import sys
from typing import Callable, List, Optional, Sequence, Tuple

import mido
import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from chordtrack.convert import Template  # noqa: E402
from chordtrack.quality import DESCRIPTOR_CODES  # noqa: E402
from chordtrack.structs import (  # noqa: E402
    SequRecord,
    descriptor_record,
    filler_record,
    marker_record,
    marker_variant_record,
    position_word,
    records_to_bytes,
    terminator_record,
)

TPB = 480
REFERENCE_BASE = 0x96
REFERENCE_STEP = 0x14
REFERENCE_TIME = 0x8020_B50A
REFERENCE_CAPACITY = 200
HEADER_RECORDS = (
    SequRecord(0x1000_0000, 0x0000_0001, 0, 0),
    SequRecord(0x2000_0000, 0x0000_0002, 0, 0),
)

# (quality, time word) per reference chord; positions advance by REFERENCE_STEP.
REFERENCE_CHORDS: List[Tuple[str, int]] = [
    ("", REFERENCE_TIME),
    ("m", REFERENCE_TIME + 40),
    ("", REFERENCE_TIME),
    ("7", REFERENCE_TIME + 120),
    ("m", REFERENCE_TIME + 40),
    ("7", REFERENCE_TIME + 120),
    ("m", REFERENCE_TIME + 999),
]


def encode_extended80(value: float) -> bytes:
    """Encode a positive float as an 80-bit IEEE extended (AIFF sample rate)."""
    if value == 0:
        return bytes(10)
    mantissa, exponent = math.frexp(value)
    raw_exp = 16383 + exponent - 1
    hi = int(mantissa * 2**32)
    return struct.pack(">HII", raw_exp, hi, 0)


def build_reference_sequ(
    chords: Sequence[Tuple[str, int]] = REFERENCE_CHORDS,
    *,
    capacity: int = REFERENCE_CAPACITY,
    base: int = REFERENCE_BASE,
    step: int = REFERENCE_STEP,
) -> bytes:
    records: List[SequRecord] = list(HEADER_RECORDS)
    for index, (quality, time_word) in enumerate(chords):
        field = position_word(base + index * step)
        records.append(marker_record(field))
        records.append(filler_record())
        records.append(marker_variant_record(field))
        records.append(descriptor_record(DESCRIPTOR_CODES[quality], 0x02, index % 12, time_word))
    records.append(terminator_record())
    records.extend(SequRecord(0, 0, 0, 0) for _ in range(capacity - len(records)))
    return records_to_bytes(records)


def build_aiff(chunks: Sequence[Tuple[bytes, bytes]]) -> bytes:
    body = bytearray(b"AIFF")
    for chunk_id, payload in chunks:
        body += chunk_id + struct.pack(">I", len(payload)) + payload
        if len(payload) % 2:
            body += b"\x00"
    return b"FORM" + struct.pack(">I", len(body)) + bytes(body)


def build_template(
    sequ: Optional[bytes] = None,
    *,
    midi_capacity: int = 4096,
    sample_rate: float = 8000.0,
    channels: int = 1,
    sample_size: int = 16,
    seconds: float = 4.0,
    include_midi: bool = True,
    include_basc: bool = True,
    trailing: Sequence[Tuple[bytes, bytes]] = (),
) -> bytes:
    sequ = build_reference_sequ() if sequ is None else sequ
    frames = int(seconds * sample_rate)
    bytes_per_frame = math.ceil(sample_size / 8) * channels
    comm = struct.pack(">HIH", channels, frames, sample_size) + encode_extended80(sample_rate)
    chunks: List[Tuple[bytes, bytes]] = [(b"COMM", comm)]
    if include_basc:
        chunks.append((b"basc", struct.pack(">III", 1, 16, 0)))
    chunks.append((b"Sequ", sequ))
    if include_midi:
        chunks.append((b".mid", bytes(midi_capacity)))
    chunks.append((b"SSND", struct.pack(">II", 0, 0) + bytes(frames * bytes_per_frame)))
    chunks.extend(trailing)
    return build_aiff(chunks)


def midi_track(
    notes: Sequence[Tuple[int, int, int]],
    *,
    channel: int = 0,
    velocity: int = 100,
) -> mido.MidiTrack:
    """Build one track from (onset_tick, pitch, duration_ticks) tuples."""
    events: List[Tuple[int, mido.Message]] = []
    for onset, pitch, duration in notes:
        events.append((onset, mido.Message("note_on", channel=channel, note=pitch, velocity=velocity)))
        events.append((onset + duration, mido.Message("note_off", channel=channel, note=pitch, velocity=0)))
    events.sort(key=lambda item: (item[0], 0 if item[1].type == "note_off" else 1))

    track = mido.MidiTrack()
    last_tick = 0
    for tick, msg in events:
        msg.time = tick - last_tick
        track.append(msg)
        last_tick = tick
    return track


def conductor_track(tempo: int = 500_000) -> mido.MidiTrack:
    track = mido.MidiTrack()
    track.append(mido.MetaMessage("set_tempo", tempo=tempo, time=0))
    track.append(mido.MetaMessage("time_signature", numerator=4, denominator=4, time=0))
    return track


def midi_bytes(tracks: Sequence[mido.MidiTrack], *, tpb: int = TPB, midi_type: int = 1) -> bytes:
    mid = mido.MidiFile(type=midi_type, ticks_per_beat=tpb)
    mid.tracks.extend(tracks)
    buf = io.BytesIO()
    mid.save(file=buf)
    return buf.getvalue()


@pytest.fixture
def reference_sequ() -> bytes:
    return build_reference_sequ()


@pytest.fixture
def template_bytes() -> bytes:
    return build_template()


@pytest.fixture
def template(template_bytes: bytes) -> Template:
    return Template.from_bytes(template_bytes)


@pytest.fixture
def make_template() -> Callable[..., bytes]:
    return build_template


@pytest.fixture
def make_reference_sequ() -> Callable[..., bytes]:
    return build_reference_sequ


@pytest.fixture
def make_midi() -> Callable[..., bytes]:
    return midi_bytes


@pytest.fixture
def make_track() -> Callable[..., mido.MidiTrack]:
    return midi_track


@pytest.fixture
def make_conductor() -> Callable[..., mido.MidiTrack]:
    return conductor_track


@pytest.fixture
def c_major_midi() -> bytes:
    """Conductor track plus a C major triad held for one quarter note."""
    return midi_bytes([conductor_track(), midi_track([(0, 60, TPB), (0, 64, TPB), (0, 67, TPB)])])


@pytest.fixture
def progression_midi() -> bytes:
    """C - Am - F - G, one bar each, root-position triads."""
    bar = TPB * 4
    notes = []
    for index, triad in enumerate(((60, 64, 67), (57, 60, 64), (53, 57, 60), (55, 59, 62))):
        notes.extend((index * bar, pitch, bar) for pitch in triad)
    return midi_bytes([conductor_track(), midi_track(notes)])
