"""
mvdcoapp protocol: native messaging framing over stdin/stdout.

Wire format (both directions):

    +----------------+----------------------+
    | length: u32 LE | payload: UTF-8 JSON  |
    +----------------+----------------------+

Reads may split or merge frames arbitrarily; the codec buffers until a
whole payload is present.
"""

from __future__ import annotations

import errno
import json
import struct
from typing import Any, BinaryIO, Callable

from mvdcoapp_log import log, shorten

HEADER = struct.Struct("<I")


def encode_frame(message: Any) -> bytes:
    """Serialize a message into one length-prefixed frame."""
    body = json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return HEADER.pack(len(body)) + body


def decode_frames(data: bytes) -> list[Any]:
    """Decode every complete frame in `data` (test and tooling helper)."""
    messages: list[Any] = []
    codec = FrameCodec(messages.append)
    codec.feed(data)
    return messages


class FrameCodec:
    """Length-prefixed JSON codec between raw pipe bytes and messages."""

    def __init__(
        self,
        on_message: Callable[[Any], None],
        writer: BinaryIO | None = None,
        on_pipe_closed: Callable[[], None] | None = None,
    ):
        self._buffer = b""
        self._on_message = on_message
        self._writer = writer
        self._on_pipe_closed = on_pipe_closed
        self._pipe_closed = False

    @property
    def pipe_closed(self) -> bool:
        return self._pipe_closed

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Append bytes and deliver every frame that is now complete."""
        self._buffer += data
        while True:
            payload = self._try_take_payload()
            if payload is None:
                break
            try:
                message = json.loads(payload.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                # The length prefix already delimited this frame; just drop it.
                log("PROTO", {"error": "parse", "detail": str(e), "length": len(payload)})
                continue
            self._on_message(message)

    def _try_take_payload(self) -> bytes | None:
        if len(self._buffer) < HEADER.size:
            return None
        (length,) = HEADER.unpack_from(self._buffer)
        end = HEADER.size + length
        if len(self._buffer) < end:
            return None
        payload = self._buffer[HEADER.size:end]
        self._buffer = self._buffer[end:]
        return payload

    def close_input(self) -> None:
        """Inbound stream ended."""
        if self._buffer:
            log("PROTO", {"event": "eof", "discarded": len(self._buffer)})
            self._buffer = b""
        self._mark_closed("stdin ended")

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def send(self, message: dict, request_id: Any = None) -> None:
        """Write one frame; silently dropped once the pipe is closed."""
        if self._pipe_closed or self._writer is None:
            return

        payload = dict(message, id=request_id) if request_id is not None else message
        logged = dict(payload)
        for name in ("chunk", "stdout", "stderr"):
            if name in logged:
                logged[name] = shorten(logged[name])
        log("SEND", logged)

        try:
            frame = encode_frame(payload)
        except (TypeError, ValueError) as e:
            log("PROTO", {"error": "encode", "detail": str(e)})
            return

        try:
            self._writer.write(frame)
            self._writer.flush()
        except BrokenPipeError:
            self._mark_closed("stdout broken pipe")
        except OSError as e:
            if e.errno != errno.EPIPE:
                raise
            self._mark_closed("stdout broken pipe")

    def _mark_closed(self, reason: str) -> None:
        if self._pipe_closed:
            return
        self._pipe_closed = True
        log("PROTO", {"event": "pipe_closed", "reason": reason})
        if self._on_pipe_closed is not None:
            self._on_pipe_closed()
