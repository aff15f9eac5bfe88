"""MIDI → chord-track AIFF conversion.

``convert_midi`` ties the pieces together:

  1. parse note events and detect chords
  2. shorten (and gate) the MIDI note durations
  3. encode chords as a Sequ blob calibrated against the template
  4. patch the template, trim its audio, validate the embedded MIDI

Templates are calibrated once; ``load_template`` memoizes per path so a
long-running process reads and calibrates its template a single time.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .chords import (
    ChordEvent,
    build_output_name,
    chord_ticks,
    chord_window_ticks,
    detect_chords,
)
from .container import SEQU_ID, AiffChunk, find_chunk, parse_chunks, patch_template, validate_embedded_midi
from .errors import EmbeddingIntegrityError, FormatError
from .midi import is_midi_bytes, last_note_tick, note_events, parse_midi, parse_timing
from .options import DEFAULT_OPTIONS, ConversionOptions
from .rewrite import GateMode, shorten_midi_notes
from .sequ_writer import SequBuild, build_sequ_chunk
from .structs import SequProfile, calibrate

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Template:
    """A reference AIFF and the Sequ profile calibrated from it."""

    data: bytes
    chunks: List[AiffChunk] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Template":
        data = bytes(data)
        return cls(data=data, chunks=parse_chunks(data))

    @functools.cached_property
    def profile(self) -> SequProfile:
        chunk = find_chunk(self.chunks, SEQU_ID)
        if chunk is None:
            raise FormatError("template has no Sequ chunk")
        return calibrate(self.data[chunk.data_start : chunk.data_end])


@functools.lru_cache(maxsize=None)
def _load_template(paths: Tuple[Path, ...]) -> Template:
    data = b"".join(path.read_bytes() for path in paths)
    template = Template.from_bytes(data)
    log.info("loaded template %s (%d bytes)", ", ".join(str(p) for p in paths), len(data))
    return template


def load_template(*paths: Path) -> Template:
    """Read a template stored in one or more consecutive part files."""
    if not paths:
        raise ValueError("need at least one template path")
    return _load_template(tuple(Path(p).resolve() for p in paths))


@dataclass(frozen=True)
class ConversionResult:
    output: bytes
    chords: List[ChordEvent]
    encoded_count: int
    midi_bytes: Optional[bytes]
    output_name: str
    sequ: SequBuild


def convert_midi(
    midi_bytes: bytes,
    template: Template,
    options: ConversionOptions = DEFAULT_OPTIONS,
) -> ConversionResult:
    """Convert a Standard MIDI File into chord-track AIFF bytes.

    Raises
    ------
    FormatError
        Malformed MIDI or template.
    CapacityError
        Sequ or MIDI data does not fit the template chunks.
    NoChordsEncodedError
        No detected chord could be encoded.
    EmbeddingIntegrityError
        The embedded MIDI failed validation.
    """
    midi = parse_midi(midi_bytes)
    events = note_events(midi, ignore_drums=options.ignore_drums)
    window = chord_window_ticks(midi.ppq, options.window_fraction)
    chords = detect_chords(events, options, window)
    log.info("detected %d chord(s): %s", len(chords), " ".join(c.label for c in chords) or "-")

    gate_mode = GateMode.TO_NEXT if options.gate_to_next else None
    force_end = last_note_tick(events) if options.hold_original_end else None
    shortened = shorten_midi_notes(
        midi_bytes,
        options.shortening_factor,
        chord_ticks(chords),
        gate_mode,
        force_end,
    )

    end_tick = parse_timing(shortened).last_tick if options.gate_to_next else None
    original_notes = None
    if options.include_notes:
        original_notes = note_events(parse_midi(shortened), ignore_drums=options.ignore_drums)

    sequ = build_sequ_chunk(
        chords,
        template.profile,
        midi.ppq,
        include_notes=options.include_notes,
        note_events=original_notes,
        prefer_original_notes=options.include_original_notes,
        gate_to_next=options.gate_to_next,
        end_tick=end_tick,
    )

    embedded = shortened if options.embed_midi else None
    if embedded is not None and not is_midi_bytes(embedded):
        raise EmbeddingIntegrityError("rewritten MIDI does not start with MThd")
    output = patch_template(template.data, sequ.data, embedded)
    if embedded is not None:
        validate_embedded_midi(output)

    return ConversionResult(
        output=output,
        chords=chords,
        encoded_count=sequ.encoded_count,
        midi_bytes=embedded,
        output_name=build_output_name(chords),
        sequ=sequ,
    )


def convert_file(
    input_path: Path,
    output_dir: Path,
    template: Template,
    options: ConversionOptions = DEFAULT_OPTIONS,
) -> Path:
    """Convert ``input_path`` and write the AIFF into ``output_dir``."""
    result = convert_midi(Path(input_path).read_bytes(), template, options)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / result.output_name
    out_path.write_bytes(result.output)
    log.info("wrote %s (%d chord(s) encoded)", out_path, result.encoded_count)
    return out_path
