#!/usr/bin/env python3
"""Human-readable chord-track AIFF inspector.

Works on templates and on converted output alike.  The report covers:

* the chunk table (id, declared size, data offsets, padding)
* COMM fields and the duration they imply
* the Sequ calibration profile and each decoded chord descriptor, with
  the linear time prediction next to the stored time word
* the embedded ``.mid`` chunk, read back through ``mido`` so the
  stream is checked by an independent parser
"""

from __future__ import annotations

import argparse
import io
import sys
from pathlib import Path
from typing import List, Sequence

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import mido  # noqa: E402

from chordtrack.container import (  # noqa: E402
    COMM_ID,
    MIDI_ID,
    SEQU_ID,
    AiffFile,
    read_comm,
)
from chordtrack.errors import ChordTrackError  # noqa: E402
from chordtrack.midi import is_midi_bytes  # noqa: E402
from chordtrack.sequ_reader import read_chord_descriptors, read_note_records  # noqa: E402
from chordtrack.structs import calibrate  # noqa: E402


def describe_chunks(aiff: AiffFile) -> List[str]:
    lines = [f"FORM size {aiff.outer_size} (file {len(aiff.raw)} bytes, expected {len(aiff.raw) - 8})"]
    for chunk in aiff.chunks:
        pad = " +pad" if chunk.size % 2 else ""
        lines.append(
            f"  {chunk.chunk_id!r:8} size {chunk.size:>9}  data 0x{chunk.data_start:08X}-0x{chunk.data_end:08X}{pad}"
        )
    return lines


def describe_comm(aiff: AiffFile) -> List[str]:
    chunk = aiff.find(COMM_ID)
    if chunk is None:
        return ["COMM: (missing)"]
    comm = read_comm(aiff.raw, chunk)
    seconds = comm.frames / comm.sample_rate if comm.sample_rate else 0.0
    return [
        f"COMM: {comm.channels} ch, {comm.sample_size} bit, {comm.sample_rate:.0f} Hz, "
        f"{comm.frames} frames ({seconds:.3f}s)"
    ]


def describe_sequ(aiff: AiffFile) -> List[str]:
    blob = aiff.chunk_bytes(SEQU_ID)
    if blob is None:
        return ["Sequ: (missing)"]
    profile = calibrate(blob)
    lines = [
        f"Sequ: {profile.max_records} record slots"
        + (" (degenerate calibration)" if profile.degenerate else ""),
        f"  position base 0x{profile.position_base:X}  step 0x{profile.position_step:X}",
        f"  time base 0x{profile.time_base:08X}  scale {profile.time_scale}",
    ]
    for code, time in sorted(profile.descriptor_times.items()):
        stable = "stable" if code in profile.stable_codes else "mixed"
        lines.append(f"  code 0x{code:08X} -> time 0x{time:08X} ({stable})")
    for chord in read_chord_descriptors(blob):
        label = chord.label() or f"?0x{chord.code:08X}"
        predicted = profile.linear_time(chord.position)
        lines.append(
            f"  pos 0x{chord.position:04X}  {label:<16} prefix 0x{chord.prefix:02X}  "
            f"time 0x{chord.time:08X} (linear 0x{predicted & 0xFFFFFFFF:08X})"
        )
    notes = read_note_records(blob)
    if notes:
        lines.append(f"  {len(notes)} note record(s)")
    return lines


def describe_midi(aiff: AiffFile) -> List[str]:
    data = aiff.chunk_bytes(MIDI_ID)
    if data is None:
        return [".mid: (missing)"]
    if not is_midi_bytes(data):
        return [".mid: (no MThd header)"]
    # Zero padding after the last track is never read: mido stops after
    # the declared track count.
    try:
        midi = mido.MidiFile(file=io.BytesIO(data))
    except (EOFError, OSError, ValueError, KeyError) as exc:
        return [f".mid: unreadable ({exc.__class__.__name__}: {exc})"]
    lines = [f".mid: type {midi.type}, {len(midi.tracks)} track(s), {midi.ticks_per_beat} tpb, {midi.length:.3f}s"]
    for index, track in enumerate(midi.tracks):
        tick = 0
        for msg in track:
            tick += msg.time
        notes = sum(1 for msg in track if msg.type == "note_on" and msg.velocity > 0)
        lines.append(f"  track {index}: {len(track)} message(s), {notes} note(s), ends at tick {tick}")
    return lines


def generate_report(path: Path, data: bytes) -> str:
    aiff = AiffFile.from_bytes(data)
    sections = [
        [f"File: {path}"],
        describe_chunks(aiff),
        describe_comm(aiff),
        describe_sequ(aiff),
        describe_midi(aiff),
    ]
    return "\n".join(line for section in sections for line in section)


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect a chord-track AIFF file.")
    parser.add_argument("path", type=Path, help="Path to the .aif file to inspect.")
    args = parser.parse_args(argv)

    try:
        report = generate_report(args.path, args.path.read_bytes())
    except (OSError, ChordTrackError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
