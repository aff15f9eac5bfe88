"""AIFF template parsing, patching and trimming.

Layout: ``FORM`` u32 size ``AIFF`` header (12 bytes), then chunks of
``id`` u32 size data, each padded to an even length.  Sizes are
big-endian and exclude the 8-byte chunk header.

Chunks used here:

  COMM  u16 channels, u32 frames, u16 sample size, 80-bit sample rate
  SSND  u32 offset, u32 block size, sample data
  basc  beat count at data offset 4
  Sequ  chord-track records (see ``structs``)
  .mid  embedded Standard MIDI File

Patching writes into the existing ``Sequ`` and ``.mid`` chunks and
zero-fills the rest of each; declared sizes never change.  Trimming
then shortens ``SSND`` to the embedded MIDI's length.
"""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass
from typing import List, Optional

from .errors import CapacityError, EmbeddingIntegrityError, FormatError
from .midi import is_midi_bytes, parse_timing

log = logging.getLogger(__name__)

FORM_TAG = b"FORM"
AIFF_TAG = b"AIFF"
FILE_HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8

SEQU_ID = "Sequ"
MIDI_ID = ".mid"
COMM_ID = "COMM"
SSND_ID = "SSND"
BASC_ID = "basc"

TRIM_MARGIN_SECONDS = 0.05


@dataclass(frozen=True)
class AiffChunk:
    chunk_id: str
    size: int
    data_start: int
    data_end: int

    @property
    def header_start(self) -> int:
        return self.data_start - CHUNK_HEADER_SIZE

    @property
    def padded_end(self) -> int:
        return self.data_end + (self.size % 2)


def parse_chunks(data: bytes) -> List[AiffChunk]:
    if len(data) < FILE_HEADER_SIZE or data[:4] != FORM_TAG:
        raise FormatError(f"expected {FORM_TAG!r} header, got {data[:4]!r}")
    if data[8:12] != AIFF_TAG:
        raise FormatError(f"expected form type {AIFF_TAG!r}, got {data[8:12]!r}")

    chunks: List[AiffChunk] = []
    offset = FILE_HEADER_SIZE
    while offset + CHUNK_HEADER_SIZE <= len(data):
        chunk_id = data[offset : offset + 4].decode("latin-1")
        (size,) = struct.unpack_from(">I", data, offset + 4)
        data_start = offset + CHUNK_HEADER_SIZE
        data_end = data_start + size
        if data_end > len(data):
            raise FormatError(
                f"chunk {chunk_id!r} at offset {offset} declares {size} bytes, "
                f"only {len(data) - data_start} available"
            )
        chunks.append(AiffChunk(chunk_id=chunk_id, size=size, data_start=data_start, data_end=data_end))
        offset = data_end + (size % 2)
    return chunks


def find_chunk(chunks: List[AiffChunk], chunk_id: str) -> Optional[AiffChunk]:
    return next((chunk for chunk in chunks if chunk.chunk_id == chunk_id), None)


def read_extended80(data: bytes, offset: int) -> float:
    """Decode an 80-bit IEEE 754 extended float (AIFF sample rate)."""
    raw_exp, hi, lo = struct.unpack_from(">HII", data, offset)
    if raw_exp == 0 and hi == 0 and lo == 0:
        return 0.0
    sign = -1.0 if raw_exp & 0x8000 else 1.0
    exponent = (raw_exp & 0x7FFF) - 16383
    mantissa = hi * 2.0 ** -31 + lo * 2.0 ** -63
    return sign * mantissa * 2.0 ** exponent


@dataclass(frozen=True)
class CommInfo:
    channels: int
    frames: int
    sample_size: int
    sample_rate: float
    frames_offset: int  # absolute offset of the frame count field

    @property
    def bytes_per_frame(self) -> int:
        return max(1, math.ceil(self.sample_size / 8)) * self.channels


def read_comm(data: bytes, chunk: AiffChunk) -> CommInfo:
    if chunk.size < 18:
        raise FormatError(f"COMM chunk too short ({chunk.size} bytes, need 18)")
    channels, frames, sample_size = struct.unpack_from(">HIH", data, chunk.data_start)
    return CommInfo(
        channels=channels,
        frames=frames,
        sample_size=sample_size,
        sample_rate=read_extended80(data, chunk.data_start + 8),
        frames_offset=chunk.data_start + 2,
    )


@dataclass(frozen=True)
class AiffFile:
    """Parsed view over a complete AIFF byte string."""

    raw: bytes
    chunks: List[AiffChunk]

    @classmethod
    def from_bytes(cls, data: bytes) -> "AiffFile":
        return cls(raw=bytes(data), chunks=parse_chunks(data))

    @property
    def outer_size(self) -> int:
        return struct.unpack_from(">I", self.raw, 4)[0]

    def find(self, chunk_id: str) -> Optional[AiffChunk]:
        return find_chunk(self.chunks, chunk_id)

    def chunk_bytes(self, chunk_id: str) -> Optional[bytes]:
        chunk = self.find(chunk_id)
        if chunk is None:
            return None
        return self.raw[chunk.data_start : chunk.data_end]

    def to_bytes(self) -> bytes:
        return self.raw


def _overwrite(out: bytearray, chunk: Optional[AiffChunk], payload: bytes, label: str) -> None:
    if chunk is None:
        raise FormatError(f"template has no {label} chunk")
    if len(payload) > chunk.size:
        raise CapacityError(
            f"{label} data ({len(payload)} bytes) exceeds template chunk size ({chunk.size} bytes)"
        )
    out[chunk.data_start : chunk.data_start + len(payload)] = payload
    out[chunk.data_start + len(payload) : chunk.data_end] = bytes(chunk.size - len(payload))


def patch_template(template: bytes, sequ_bytes: bytes, midi_bytes: Optional[bytes] = None) -> bytes:
    """Write the Sequ blob (and optionally MIDI) into a copy of ``template``.

    Raises
    ------
    FormatError
        The template is not AIFF or lacks a required chunk.
    CapacityError
        A blob is larger than its chunk's declared size.
    """
    chunks = parse_chunks(template)
    out = bytearray(template)
    _overwrite(out, find_chunk(chunks, SEQU_ID), sequ_bytes, SEQU_ID)
    if midi_bytes is None:
        return bytes(out)
    _overwrite(out, find_chunk(chunks, MIDI_ID), midi_bytes, MIDI_ID)
    return trim_to_midi(bytes(out), midi_bytes)


def trim_to_midi(data: bytes, midi_bytes: bytes) -> bytes:
    """Shorten the trailing SSND chunk to the MIDI length plus a small margin.

    Applies only when COMM and SSND exist and SSND is the last chunk in
    the file; otherwise ``data`` is returned unchanged.  The frame count
    never exceeds what the original SSND payload holds.  An odd SSND size
    gets its pad byte back.
    """
    chunks = parse_chunks(data)
    comm_chunk = find_chunk(chunks, COMM_ID)
    ssnd_chunk = find_chunk(chunks, SSND_ID)
    if comm_chunk is None or ssnd_chunk is None:
        return data
    if len(data) not in (ssnd_chunk.data_end, ssnd_chunk.padded_end):
        return data

    comm = read_comm(data, comm_chunk)
    if not comm.sample_rate or not comm.channels or not comm.sample_size:
        return data

    timing = parse_timing(midi_bytes)
    duration = max(0.0, timing.duration_seconds() + TRIM_MARGIN_SECONDS)

    bytes_per_frame = comm.bytes_per_frame
    target_frames = max(1, math.ceil(duration * comm.sample_rate))
    target_bytes = target_frames * bytes_per_frame

    (sound_offset,) = struct.unpack_from(">I", data, ssnd_chunk.data_start)
    available = ssnd_chunk.size - 8 - sound_offset
    if available <= 0:
        return data
    if target_bytes > available:
        target_bytes = available
        target_frames = target_bytes // bytes_per_frame

    new_ssnd_size = 8 + sound_offset + target_bytes
    new_length = ssnd_chunk.data_start + new_ssnd_size

    out = bytearray(data[:new_length])
    if new_ssnd_size % 2:
        out.append(0)
    struct.pack_into(">I", out, comm.frames_offset, target_frames)
    struct.pack_into(">I", out, ssnd_chunk.header_start + 4, new_ssnd_size)
    struct.pack_into(">I", out, 4, len(out) - 8)

    basc_chunk = find_chunk(chunks, BASC_ID)
    if basc_chunk is not None and basc_chunk.size >= 8:
        struct.pack_into(">I", out, basc_chunk.data_start + 4, timing.beat_count())

    log.debug(
        "trimmed SSND to %d frames (%.3fs at %.0f Hz), file %d -> %d bytes",
        target_frames,
        duration,
        comm.sample_rate,
        len(data),
        len(out),
    )
    return bytes(out)


def validate_embedded_midi(data: bytes) -> None:
    """Raise ``EmbeddingIntegrityError`` unless a ``.mid`` chunk holds an SMF."""
    try:
        chunks = parse_chunks(data)
    except FormatError as exc:
        raise EmbeddingIntegrityError(f"output is not a readable AIFF: {exc}") from exc
    chunk = find_chunk(chunks, MIDI_ID)
    if chunk is None:
        raise EmbeddingIntegrityError("output AIFF is missing embedded MIDI")
    if not is_midi_bytes(data[chunk.data_start : chunk.data_end]):
        raise EmbeddingIntegrityError("embedded MIDI chunk does not start with MThd")
