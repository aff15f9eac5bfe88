"""Convert MIDI into AIFF files carrying a host-readable chord track."""

from .chords import (  # noqa: F401
    CHORD_PATTERNS,
    NO_CHORD,
    ChordEvent,
    ChordPattern,
    build_output_name,
    chord_window_ticks,
    detect_chords,
    identify_chord,
    merge_duplicate_chords,
)
from .container import (  # noqa: F401
    AiffChunk,
    AiffFile,
    parse_chunks,
    patch_template,
    read_extended80,
    trim_to_midi,
    validate_embedded_midi,
)
from .convert import (  # noqa: F401
    ConversionResult,
    Template,
    convert_file,
    convert_midi,
    load_template,
)
from .errors import (  # noqa: F401
    CalibrationDegenerate,
    CapacityError,
    ChordTrackError,
    EmbeddingIntegrityError,
    FormatError,
    NoChordsEncodedError,
)
from .midi import (  # noqa: F401
    MidiEvent,
    MidiFile,
    MidiTiming,
    NoteEvent,
    TempoPoint,
    parse_midi,
    parse_note_events,
    parse_timing,
    read_varlen,
    write_varlen,
)
from .options import ConversionOptions, load_options, parse_options  # noqa: F401
from .quality import normalize_quality, parse_chord_name  # noqa: F401
from .rewrite import GateMode, shorten_midi_notes  # noqa: F401
from .sequ_reader import read_chord_descriptors, read_note_records  # noqa: F401
from .sequ_writer import SequBuild, build_sequ_chunk  # noqa: F401
from .structs import SequProfile, SequRecord, calibrate  # noqa: F401
