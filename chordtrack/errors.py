"""Error kinds raised while converting MIDI into a chord-track AIFF.

Every fatal error is a ``ValueError`` so callers that already treat
malformed input as ``ValueError`` keep working.
"""

from __future__ import annotations


class ChordTrackError(ValueError):
    """Base class for conversion failures."""


class FormatError(ChordTrackError):
    """Input bytes do not follow the expected structure."""


class CapacityError(ChordTrackError):
    """A synthesized payload does not fit its template chunk."""


class NoChordsEncodedError(ChordTrackError):
    """No chord survived encoding, so the output would be useless."""


class EmbeddingIntegrityError(ChordTrackError):
    """The embedded event stream is missing or malformed."""


class CalibrationDegenerate(UserWarning):
    """The reference Sequ blob held no descriptor samples.

    Issued through ``warnings.warn`` rather than raised; the condition is
    also logged and recorded on the profile.
    """
