"""Decoding of the daemon's multiplexed log stream.

Without a TTY the daemon interleaves stdout and stderr in one body, each
chunk prefixed by an 8-byte header::

    [stream, 0, 0, 0, size1, size2, size3, size4]

``stream`` is 0 (stdin), 1 (stdout) or 2 (stderr); the last four bytes are
the payload length as a big-endian unsigned int.
"""

import logging
import struct
from dataclasses import dataclass

logger = logging.getLogger(__name__)

HEADER_SIZE = 8
STREAM_STDIN = 0
STREAM_STDOUT = 1
STREAM_STDERR = 2

_HEADER = struct.Struct(">BxxxL")
# ASCII whitespace and NUL; non-breaking and other unicode spaces are kept
_TRIM_CHARS = " \t\n\r\0\x0b"


@dataclass
class DemuxedLogs:
    """Decoded log stream."""
    output: str  # all frames, in emission order
    stdout: str
    stderr: str
    truncated: bool = False


class LogDemuxer:
    """Turns a raw multiplexed log body into text."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    def decode(self, raw: bytes) -> str:
        """Merged stdout/stderr text, trimmed."""
        return self.demux(raw).output

    def demux(self, raw: bytes) -> DemuxedLogs:
        """Split ``raw`` into frames.

        A frame declaring an empty payload, or more bytes than are left,
        ends decoding and whatever follows is dropped. Fewer than
        HEADER_SIZE trailing bytes are kept verbatim.
        """
        merged = bytearray()
        streams = {STREAM_STDOUT: bytearray(), STREAM_STDERR: bytearray()}
        truncated = False
        pos = 0
        length = len(raw)

        while pos < length:
            if length - pos < HEADER_SIZE:
                merged += raw[pos:]
                truncated = True
                break

            stream, size = _HEADER.unpack_from(raw, pos)
            pos += HEADER_SIZE

            if size <= 0 or pos + size > length:
                truncated = pos < length or size > 0
                break

            payload = raw[pos:pos + size]
            merged += payload
            if stream in streams:
                streams[stream] += payload
            pos += size

        if truncated:
            logger.warning(
                f"Log stream cut short at byte {pos} of {length}; output may be incomplete"
            )

        return DemuxedLogs(
            output=self._text(merged),
            stdout=self._text(streams[STREAM_STDOUT]),
            stderr=self._text(streams[STREAM_STDERR]),
            truncated=truncated,
        )

    def _text(self, data: bytearray) -> str:
        return data.decode(self.encoding, errors="replace").strip(_TRIM_CHARS)
