"""
Wire framing shared by sender and receiver.

A transfer is one UTF-8 JSON header line terminated by ``\\n``, followed
immediately by the raw file body. The body runs until the sender closes
the connection; ``fileSize`` is used only to judge completeness.
"""

import json

from pydantic import ValidationError

from transfer.models import FrameHeader

HEADER_TERMINATOR = b"\n"
MAX_HEADER_SIZE = 65536  # bytes buffered before giving up on a header


class HeaderError(ValueError):
    """The header line could not be parsed."""


def encode_header(header: FrameHeader) -> bytes:
    """JSON-encode a header and append the terminating newline."""
    payload = json.dumps(
        header.model_dump(by_alias=True),
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return payload.encode("utf-8") + HEADER_TERMINATOR


def decode_header(buffer: bytes) -> tuple[FrameHeader, bytes] | None:
    """
    Try to split a header off the front of ``buffer``.

    Returns:
        None if no newline has arrived yet (keep buffering), otherwise
        ``(header, remainder)`` where remainder is body data that arrived
        in the same reads and must be written out.

    Raises:
        HeaderError: the line before the newline is not a valid header.
    """
    end = buffer.find(HEADER_TERMINATOR)
    if end < 0:
        if len(buffer) > MAX_HEADER_SIZE:
            raise HeaderError(f"No header terminator within {MAX_HEADER_SIZE} bytes")
        return None

    line = bytes(buffer[:end])
    try:
        header = FrameHeader.model_validate_json(line)
    except ValidationError as e:
        raise HeaderError(f"Malformed transfer header: {e.error_count()} error(s)") from e

    return header, bytes(buffer[end + 1:])
