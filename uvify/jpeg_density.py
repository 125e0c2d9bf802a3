"""Rewrite the JFIF density of an encoded JPEG without touching image data.

Print layout tools read the print resolution straight from the JFIF APP0
segment, and the encoder does not always declare it. The stream is parsed into
a list of marker segments up to the first SOS marker; everything from SOS on
(the entropy-coded scan and EOI) is carried as opaque bytes. Only the JFIF
segment is replaced or inserted, all other segments are written back
byte-for-byte.
"""

import logging
import struct
from dataclasses import dataclass, field, replace

from uvify import DPI
from uvify.errors import JpegStructureError

logger = logging.getLogger(__name__)

SOI = 0xD8
EOI = 0xD9
SOS = 0xDA
APP0 = 0xE0
TEM = 0x01

JFIF_IDENTIFIER = b"JFIF\x00"
JFIF_MIN_PAYLOAD = 14  # identifier, version, units, X/Y density, thumbnail size
UNITS_DOTS_PER_INCH = 1

_SOI_BYTES = bytes([0xFF, SOI])
_EOI_BYTES = bytes([0xFF, EOI])


def _is_standalone(marker: int) -> bool:
    # TEM and RSTn carry no length field.
    return marker == TEM or 0xD0 <= marker <= 0xD7


@dataclass(frozen=True)
class JpegSegment:
    """One marker segment between SOI and SOS."""

    marker: int
    payload: bytes = b""
    padding: int = 0  # extra 0xFF fill bytes seen before the marker

    def to_bytes(self) -> bytes:
        head = b"\xff" * (self.padding + 1) + bytes([self.marker])
        if _is_standalone(self.marker):
            return head
        return head + struct.pack(">H", len(self.payload) + 2) + self.payload

    @property
    def is_jfif(self) -> bool:
        return self.marker == APP0 and self.payload.startswith(JFIF_IDENTIFIER)


@dataclass(frozen=True)
class JpegStream:
    """Header segments plus the untouched scan (SOS marker through EOI)."""

    segments: tuple[JpegSegment, ...] = field(default_factory=tuple)
    scan: bytes = b""

    def to_bytes(self) -> bytes:
        return _SOI_BYTES + b"".join(s.to_bytes() for s in self.segments) + self.scan

    def jfif_index(self) -> int | None:
        for index, segment in enumerate(self.segments):
            if segment.is_jfif:
                return index
        return None


def parse_jpeg(data: bytes) -> JpegStream:
    """Split a JPEG byte stream into header segments and scan data.

    Raises:
        JpegStructureError: If the stream does not start with SOI, a segment
            is truncated or has an invalid length, an unexpected marker appears
            before the scan, or there is no SOS ... EOI tail.
    """
    if data[:2] != _SOI_BYTES:
        raise JpegStructureError("missing SOI marker")

    segments: list[JpegSegment] = []
    end = len(data)
    pos = 2
    while True:
        start = pos
        if pos >= end or data[pos] != 0xFF:
            raise JpegStructureError(f"expected a marker at offset {pos}")
        while pos < end and data[pos] == 0xFF:
            pos += 1
        if pos >= end:
            raise JpegStructureError("stream ends inside marker fill bytes")
        marker = data[pos]
        pos += 1
        padding = pos - start - 2

        if marker == SOS:
            scan = data[start:]
            if not scan.endswith(_EOI_BYTES):
                raise JpegStructureError("scan data is not terminated by EOI")
            return JpegStream(segments=tuple(segments), scan=scan)
        if marker in (0x00, SOI, EOI):
            raise JpegStructureError(f"unexpected marker 0x{marker:02X} at offset {pos - 1}")
        if _is_standalone(marker):
            segments.append(JpegSegment(marker, b"", padding))
            continue

        if pos + 2 > end:
            raise JpegStructureError(f"segment 0x{marker:02X} is missing its length")
        (length,) = struct.unpack_from(">H", data, pos)
        if length < 2 or pos + length > end:
            raise JpegStructureError(
                f"segment 0x{marker:02X} at offset {start} declares length {length}, "
                f"{end - pos} bytes remain"
            )
        segments.append(JpegSegment(marker, data[pos + 2:pos + length], padding))
        pos += length


def _jfif_payload(dpi: int) -> bytes:
    return struct.pack(
        ">5sBBBHHBB", JFIF_IDENTIFIER, 1, 1, UNITS_DOTS_PER_INCH, dpi, dpi, 0, 0
    )


def set_jfif_density(stream: JpegStream, dpi: int) -> JpegStream:
    """Return a stream whose JFIF segment declares ``dpi`` in both directions.

    An existing JFIF segment keeps its version and thumbnail; a missing one is
    inserted as JFIF 1.01 right after SOI.
    """
    segments = list(stream.segments)
    index = stream.jfif_index()
    if index is None:
        segments.insert(0, JpegSegment(APP0, _jfif_payload(dpi)))
    else:
        old = segments[index].payload
        if len(old) < JFIF_MIN_PAYLOAD:
            raise JpegStructureError(f"JFIF segment too short ({len(old)} bytes)")
        payload = old[:7] + struct.pack(">BHH", UNITS_DOTS_PER_INCH, dpi, dpi) + old[12:]
        segments[index] = replace(segments[index], payload=payload)
    return replace(stream, segments=tuple(segments))


def read_density(data: bytes) -> tuple[int, int, int] | None:
    """Return (units, x_density, y_density) from the JFIF segment, if any."""
    stream = parse_jpeg(data)
    index = stream.jfif_index()
    if index is None:
        return None
    payload = stream.segments[index].payload
    if len(payload) < JFIF_MIN_PAYLOAD:
        raise JpegStructureError(f"JFIF segment too short ({len(payload)} bytes)")
    return struct.unpack_from(">BHH", payload, 7)


def patch_density(data: bytes, dpi: int = DPI) -> bytes:
    """Embed ``dpi`` as the JFIF print density of an encoded JPEG.

    Image content always wins over metadata: if the stream cannot be parsed
    the original buffer is returned unchanged.

    Raises:
        ValueError: If ``dpi`` does not fit the 16-bit density field.
    """
    if not 1 <= dpi <= 0xFFFF:
        raise ValueError(f"Density must be between 1 and 65535, got {dpi}.")
    try:
        return set_jfif_density(parse_jpeg(data), dpi).to_bytes()
    except JpegStructureError as e:
        logger.debug(f"Density patch skipped, keeping unpatched JPEG: {e}")
        return data
