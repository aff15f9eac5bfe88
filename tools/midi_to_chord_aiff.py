#!/usr/bin/env python3
"""Convert MIDI files into chord-track AIFF files.

Examples
--------
Convert with the default options:
    python tools/midi_to_chord_aiff.py song.mid --template template.part1 template.part2

Write into a folder, sharp spelling, no slash chords:
    python tools/midi_to_chord_aiff.py *.mid --template t.aif -o out --sharps --no-slash

Analysis only:
    python tools/midi_to_chord_aiff.py song.mid --info
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from chordtrack.chords import build_output_name, chord_window_ticks, detect_chords  # noqa: E402
from chordtrack.convert import convert_file, load_template  # noqa: E402
from chordtrack.errors import ChordTrackError  # noqa: E402
from chordtrack.midi import note_events, parse_midi  # noqa: E402
from chordtrack.options import DEFAULT_OPTIONS, ConversionOptions, load_options, options_to_json  # noqa: E402

log = logging.getLogger("midi_to_chord_aiff")


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s" if verbose else "%(message)s",
    )


def build_options(args: argparse.Namespace) -> ConversionOptions:
    base = load_options(args.options) if args.options else DEFAULT_OPTIONS
    return base.replace(
        min_notes=args.min_notes,
        shortening_factor=args.factor,
        prefer_flats=False if args.sharps else None,
        use_slash=False if args.no_slash else None,
        emit_nc=True if args.emit_nc else None,
        gate_to_next=False if args.no_gate else None,
        include_original_notes=True if args.original_notes else None,
        ignore_drums=False if args.keep_drums else None,
    )


def show_info(path: Path, options: ConversionOptions) -> None:
    midi = parse_midi(path.read_bytes())
    events = note_events(midi, ignore_drums=options.ignore_drums)
    window = chord_window_ticks(midi.ppq, options.window_fraction)
    chords = detect_chords(events, options, window)
    print(f"{path.name}: format {midi.format}, {len(midi.tracks)} track(s), ppq {midi.ppq}")
    print(f"  note events: {len(events)}  window: {window} ticks")
    for chord in chords:
        beat = chord.tick / midi.ppq
        print(f"  tick {chord.tick:>7}  beat {beat:7.2f}  {chord.label}")
    print(f"  output name: {build_output_name(chords)}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Convert MIDI into chord-track AIFF files")
    parser.add_argument("inputs", nargs="+", type=Path, help="Input MIDI file(s)")
    parser.add_argument(
        "--template",
        nargs="+",
        type=Path,
        help="Template AIFF, optionally split into parts given in order",
    )
    parser.add_argument("-o", "--output-dir", type=Path, default=Path("."), help="Output folder")
    parser.add_argument("--options", type=Path, help="JSON options file (camelCase keys)")
    parser.add_argument("--min-notes", type=int, default=None, help="Minimum pitch classes per chord")
    parser.add_argument("--factor", type=float, default=None, help="Note shortening factor")
    parser.add_argument("--sharps", action="store_true", help="Spell roots with sharps")
    parser.add_argument("--no-slash", action="store_true", help="Do not emit /bass suffixes")
    parser.add_argument("--emit-nc", action="store_true", help="Emit N.C. for unrecognized windows")
    parser.add_argument("--no-gate", action="store_true", help="Do not hold notes until the next chord")
    parser.add_argument(
        "--original-notes",
        action="store_true",
        help="Embed the (shortened) MIDI notes instead of chord voicings",
    )
    parser.add_argument("--keep-drums", action="store_true", help="Include channel 10 notes")
    parser.add_argument("--info", action="store_true", help="Show detected chords only")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    try:
        options = build_options(args)
    except (OSError, ValueError) as exc:
        log.error("invalid options: %s", exc)
        return 2
    log.debug("options: %s", json.dumps(options_to_json(options)))

    if args.info:
        failed = 0
        for path in args.inputs:
            try:
                show_info(path, options)
            except (OSError, ChordTrackError) as exc:
                log.error("Failed: %s: %s", path.name, exc)
                failed += 1
        return 1 if failed else 0

    if not args.template:
        parser.error("--template is required unless --info is given")
    try:
        template = load_template(*args.template)
    except (OSError, ChordTrackError) as exc:
        log.error("cannot load template: %s", exc)
        return 2

    failed = 0
    for path in args.inputs:
        try:
            log.info("Processing: %s", path.name)
            out_path = convert_file(path, args.output_dir, template, options)
            print(out_path)
        except (OSError, ChordTrackError) as exc:
            log.error("Failed: %s: %s", path.name, exc)
            failed += 1
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
