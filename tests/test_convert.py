"""End-to-end conversion tests against synthetic templates."""

from __future__ import annotations

import math
import struct
from pathlib import Path
from typing import List

import pytest

from chordtrack.container import TRIM_MARGIN_SECONDS, AiffFile, read_comm
from chordtrack.convert import Template, convert_file, convert_midi, load_template
from chordtrack.errors import CalibrationDegenerate, CapacityError, FormatError, NoChordsEncodedError
from chordtrack.midi import parse_midi
from chordtrack.options import DEFAULT_OPTIONS
from chordtrack.sequ_reader import read_chord_descriptors, read_note_records
from chordtrack.structs import records_to_bytes, terminator_record
from conftest import HEADER_RECORDS, REFERENCE_BASE, REFERENCE_STEP, REFERENCE_TIME, build_aiff

BAR = 1920


def _sequ(output: bytes) -> bytes:
    return AiffFile.from_bytes(output).chunk_bytes("Sequ")


def _end_of_track_ticks(midi: bytes) -> List[int]:
    return [[e.tick for e in track if e.is_end_of_track][0] for track in parse_midi(midi).tracks]


# ── single chord ─────────────────────────────────────────────────────


class TestSingleChord:
    def test_chord_and_name(self, c_major_midi: bytes, template: Template) -> None:
        result = convert_midi(c_major_midi, template)
        assert [(c.tick, c.label) for c in result.chords] == [(0, "C")]
        assert result.encoded_count == 1
        assert result.output_name == "C.chords.aif"

    def test_sequ_contents(self, c_major_midi: bytes, template: Template) -> None:
        result = convert_midi(c_major_midi, template)
        blob = _sequ(result.output)
        assert blob.startswith(records_to_bytes(HEADER_RECORDS))
        (chord,) = read_chord_descriptors(blob)
        assert (chord.position, chord.label(), chord.time, chord.prefix) == (
            REFERENCE_BASE,
            "C",
            REFERENCE_TIME,
            0x02,
        )
        notes = read_note_records(blob)
        assert [(n.position, n.note, n.length) for n in notes] == [
            (REFERENCE_BASE, 48, 1),
            (REFERENCE_BASE, 60, 1),
            (REFERENCE_BASE, 64, 1),
            (REFERENCE_BASE, 67, 1),
        ]

    def test_embedded_midi_is_shortened(self, c_major_midi: bytes, template: Template) -> None:
        result = convert_midi(c_major_midi, template)
        embedded = AiffFile.from_bytes(result.output).chunk_bytes(".mid")
        assert embedded.startswith(result.midi_bytes)
        assert _end_of_track_ticks(result.midi_bytes) == [0, 120]

    def test_container_sizes(self, c_major_midi: bytes, template: Template, template_bytes: bytes) -> None:
        result = convert_midi(c_major_midi, template)
        aiff = AiffFile.from_bytes(result.output)
        assert aiff.outer_size == len(result.output) - 8
        assert [c.chunk_id for c in aiff.chunks] == ["COMM", "basc", "Sequ", ".mid", "SSND"]
        template_sizes = {c.chunk_id: c.size for c in AiffFile.from_bytes(template_bytes).chunks}
        assert aiff.find("Sequ").size == template_sizes["Sequ"]
        assert aiff.find(".mid").size == template_sizes[".mid"]

        comm = read_comm(aiff.raw, aiff.find("COMM"))
        expected_frames = math.ceil((0.125 + TRIM_MARGIN_SECONDS) * 8000)
        assert comm.frames == expected_frames
        assert aiff.find("SSND").size == 8 + 2 * expected_frames
        assert struct.unpack(">I", aiff.chunk_bytes("basc")[4:8])[0] == 1


# ── progressions and options ─────────────────────────────────────────


def test_progression(progression_midi: bytes, template: Template) -> None:
    result = convert_midi(progression_midi, template)
    assert [c.label for c in result.chords] == ["C", "Am", "F", "G"]
    assert result.output_name == "C,Am,F,G.chords.aif"

    blob = _sequ(result.output)
    decoded = read_chord_descriptors(blob)
    assert [c.position for c in decoded] == [REFERENCE_BASE + i * REFERENCE_STEP for i in range(4)]
    assert [c.time for c in decoded] == [
        REFERENCE_TIME,
        REFERENCE_TIME + 40,
        REFERENCE_TIME,
        REFERENCE_TIME,
    ]
    lengths = [n.length for n in read_note_records(blob)]
    # three gated chords, then G held for its shortened quarter bar
    assert lengths == [REFERENCE_STEP] * 12 + [5] * 4

    midi = parse_midi(result.midi_bytes)
    for event in midi.tracks[1]:
        if event.is_note_off and event.tick < 3 * BAR:
            assert (event.tick + 1) % BAR == 0


def test_no_gating_when_gate_to_next_is_off(progression_midi: bytes, template: Template) -> None:
    options = DEFAULT_OPTIONS.replace(gate_to_next=False)
    result = convert_midi(progression_midi, template, options)
    offs = {e.tick for e in parse_midi(result.midi_bytes).tracks[1] if e.is_note_off}
    assert offs == {480, BAR + 480, 2 * BAR + 480, 3 * BAR + 480}
    assert {n.length for n in read_note_records(_sequ(result.output))} == {1}


def _bass_off_tick(midi: bytes) -> int:
    (tick,) = [e.tick for e in parse_midi(midi).tracks[1] if e.is_note_off and e.note == 36]
    return tick


def test_note_held_across_chord_change(make_midi, make_track, make_conductor, template: Template) -> None:
    # C triad then F triad over a C pedal held for both bars
    notes = [(0, 36, 2 * BAR)]
    notes += [(0, pitch, BAR) for pitch in (60, 64, 67)]
    notes += [(BAR, pitch, BAR) for pitch in (53, 57, 60)]
    data = make_midi([make_conductor(), make_track(notes)])

    plain = convert_midi(data, template, DEFAULT_OPTIONS.replace(gate_to_next=False))
    assert [c.tick for c in plain.chords] == [0, BAR]
    assert _bass_off_tick(plain.midi_bytes) == BAR // 2

    gated = convert_midi(data, template)
    assert _bass_off_tick(gated.midi_bytes) == BAR - 1


def test_original_notes_option(c_major_midi: bytes, template: Template) -> None:
    options = DEFAULT_OPTIONS.replace(include_original_notes=True)
    result = convert_midi(c_major_midi, template, options)
    assert result.sequ.used_original_notes
    notes = read_note_records(_sequ(result.output))
    assert [(n.note, n.length) for n in notes] == [(60, 1), (64, 1), (67, 1)]


def test_notes_can_be_left_out(c_major_midi: bytes, template: Template) -> None:
    result = convert_midi(c_major_midi, template, DEFAULT_OPTIONS.replace(include_notes=False))
    assert read_note_records(_sequ(result.output)) == []
    assert result.sequ.record_count == len(HEADER_RECORDS) + 4 + 1


def test_without_embedded_midi(c_major_midi: bytes, template: Template, template_bytes: bytes) -> None:
    result = convert_midi(c_major_midi, template, DEFAULT_OPTIONS.replace(embed_midi=False))
    assert result.midi_bytes is None
    assert len(result.output) == len(template_bytes)
    assert set(AiffFile.from_bytes(result.output).chunk_bytes(".mid")) == {0}


def test_hold_original_end(c_major_midi: bytes, template: Template) -> None:
    result = convert_midi(c_major_midi, template, DEFAULT_OPTIONS.replace(hold_original_end=True))
    assert _end_of_track_ticks(result.midi_bytes) == [480, 480]


def test_sharps_spelling_changes_name_not_descriptor(make_midi, make_track, make_conductor, template) -> None:
    data = make_midi([make_conductor(), make_track([(0, 61, 480), (0, 65, 480), (0, 68, 480)])])
    flats = convert_midi(data, template)
    sharps = convert_midi(data, template, DEFAULT_OPTIONS.replace(prefer_flats=False))
    assert flats.output_name == "Db.chords.aif"
    assert sharps.output_name == "C#.chords.aif"
    assert _sequ(flats.output) == _sequ(sharps.output)


# ── failures ─────────────────────────────────────────────────────────


def test_no_chords(make_midi, make_track, template: Template) -> None:
    data = make_midi([make_track([(0, 60, 480), (960, 62, 480)])])
    with pytest.raises(NoChordsEncodedError):
        convert_midi(data, template)


def test_drum_only_file_has_no_chords(make_midi, make_track, template: Template) -> None:
    data = make_midi([make_track([(0, 36, 480), (0, 40, 480), (0, 42, 480)], channel=9)])
    with pytest.raises(NoChordsEncodedError):
        convert_midi(data, template)
    result = convert_midi(data, template, DEFAULT_OPTIONS.replace(ignore_drums=False))
    assert result.encoded_count == 1


def test_malformed_midi(template: Template) -> None:
    with pytest.raises(FormatError):
        convert_midi(b"not midi", template)


def test_template_without_sequ(c_major_midi: bytes) -> None:
    template = Template.from_bytes(build_aiff([(b"COMM", bytes(18))]))
    with pytest.raises(FormatError, match="Sequ"):
        convert_midi(c_major_midi, template)


def test_sequ_chunk_too_small(c_major_midi: bytes, make_template, make_reference_sequ) -> None:
    sequ = make_reference_sequ([("", REFERENCE_TIME)], capacity=7)
    template = Template.from_bytes(make_template(sequ=sequ))
    with pytest.raises(CapacityError):
        convert_midi(c_major_midi, template)


def test_degenerate_template_still_converts(c_major_midi: bytes, make_template) -> None:
    blank = records_to_bytes(list(HEADER_RECORDS) + [terminator_record()]) + bytes(16 * 40)
    template = Template.from_bytes(make_template(sequ=blank))
    with pytest.warns(CalibrationDegenerate):
        result = convert_midi(c_major_midi, template)
    assert template.profile.degenerate
    assert result.sequ.provisional_codes
    (chord,) = read_chord_descriptors(_sequ(result.output))
    assert chord.position == 0x96


# ── templates and files ──────────────────────────────────────────────


def test_profile_is_calibrated_once(template: Template) -> None:
    assert template.profile is template.profile
    assert template.profile.position_step == REFERENCE_STEP


def test_load_template_from_parts(tmp_path: Path, template_bytes: bytes) -> None:
    middle = len(template_bytes) // 2
    first = tmp_path / "template.part1"
    second = tmp_path / "template.part2"
    first.write_bytes(template_bytes[:middle])
    second.write_bytes(template_bytes[middle:])

    loaded = load_template(first, second)
    assert loaded.data == template_bytes
    assert load_template(first, second) is loaded
    assert load_template(str(first), second) is loaded


def test_load_template_needs_a_path() -> None:
    with pytest.raises(ValueError):
        load_template()


def test_convert_file(tmp_path: Path, progression_midi: bytes, template: Template) -> None:
    source = tmp_path / "song.mid"
    source.write_bytes(progression_midi)
    out_path = convert_file(source, tmp_path / "out", template)
    assert out_path == tmp_path / "out" / "C,Am,F,G.chords.aif"
    assert out_path.read_bytes()[:4] == b"FORM"
