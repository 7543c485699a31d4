"""Framed byte-stream channel between the Supervisor and the Stem.

A channel end owns one pipe to read from and one pipe to write to. Every
message travels as a frame: a 4-byte big-endian length followed by the
encoded message. Reads are non-blocking and tolerate partial frames; writes
are blocking and never interleave.
"""

import contextlib
import errno
import os
import struct
import threading
from collections import deque
from typing import Self, final

from nodekeeper.exceptions import ChannelClosedError, NodeConfigInvalidError, ProtocolError

from ._messages import Message, decode_message, encode_message

HEADER = struct.Struct("!I")
MAX_FRAME_SIZE = 16 * 1024 * 1024
READ_CHUNK_SIZE = 65536


def encode_frame(payload: bytes) -> bytes:
    """Prefix a payload with its length.

    Raises:
        ProtocolError: If the payload exceeds MAX_FRAME_SIZE.
    """
    if len(payload) > MAX_FRAME_SIZE:
        msg = f"frame of {len(payload)} bytes exceeds {MAX_FRAME_SIZE}"
        raise ProtocolError(msg)
    return HEADER.pack(len(payload)) + payload


@final
class FrameDecoder:
    """Incremental decoder turning an arbitrary byte stream into frames."""

    __slots__ = ("_buffer",)

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Return the number of buffered bytes not yet forming a frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[bytes]:
        """Buffer ``data`` and return every frame payload now complete.

        Raises:
            ProtocolError: If a frame header announces an oversized frame.
        """
        self._buffer.extend(data)
        frames: list[bytes] = []
        while len(self._buffer) >= HEADER.size:
            (length,) = HEADER.unpack_from(self._buffer)
            if length > MAX_FRAME_SIZE:
                msg = f"incoming frame of {length} bytes exceeds {MAX_FRAME_SIZE}"
                raise ProtocolError(msg)
            end = HEADER.size + length
            if len(self._buffer) < end:
                break
            frames.append(bytes(self._buffer[HEADER.size : end]))
            del self._buffer[:end]
        return frames


@final
class Channel:
    """One end of a bidirectional Supervisor/Stem channel.

    Attributes:
        at_eof: True once the peer closed its write side.
    """

    __slots__ = ("_decoder", "_read_fd", "_ready", "_write_fd", "_write_lock", "at_eof")

    def __init__(self, read_fd: int, write_fd: int) -> None:
        """Wrap an already-open pair of pipe descriptors.

        Args:
            read_fd: Descriptor to receive frames from (made non-blocking).
            write_fd: Descriptor to send frames to.
        """
        self._read_fd: int = read_fd
        self._write_fd: int = write_fd
        self._decoder = FrameDecoder()
        self._ready: deque[bytes] = deque()
        self._write_lock = threading.Lock()
        self.at_eof: bool = False
        os.set_blocking(read_fd, False)

    @classmethod
    def pair(cls) -> tuple[Self, Self]:
        """Create a fresh pair of connected channel ends.

        Returns:
            The (supervisor_end, stem_end) tuple.
        """
        down_read, down_write = os.pipe()
        up_read, up_write = os.pipe()
        return cls(up_read, down_write), cls(down_read, up_write)

    @property
    def read_fd(self) -> int:
        """Return the descriptor to poll for readability."""
        return self._read_fd

    @property
    def write_fd(self) -> int:
        """Return the descriptor frames are written to."""
        return self._write_fd

    @property
    def closed(self) -> bool:
        """Return whether this end has been closed locally."""
        return self._read_fd < 0

    def fileno(self) -> int:
        """Return the read descriptor, for use with selectors."""
        return self._read_fd

    def set_inheritable(self) -> None:
        """Let both descriptors survive an exec."""
        os.set_inheritable(self._read_fd, True)  # noqa: FBT003
        os.set_inheritable(self._write_fd, True)  # noqa: FBT003

    def send(self, message: Message) -> None:
        """Write one message as a complete frame.

        Raises:
            ChannelClosedError: If this end is closed or the peer is gone.
        """
        if self.closed:
            msg = "channel is closed"
            raise ChannelClosedError(msg)
        frame = memoryview(encode_frame(encode_message(message)))
        with self._write_lock:
            try:
                while frame:
                    written = os.write(self._write_fd, frame)
                    frame = frame[written:]
            except BrokenPipeError as e:
                msg = "peer closed the channel"
                raise ChannelClosedError(msg) from e

    def _fill(self) -> None:
        while not self.at_eof:
            try:
                data = os.read(self._read_fd, READ_CHUNK_SIZE)
            except BlockingIOError:
                return
            except OSError as e:
                if e.errno == errno.EINTR:
                    continue
                raise
            if not data:
                self.at_eof = True
                return
            try:
                self._ready.extend(self._decoder.feed(data))
            except ProtocolError:
                # framing is lost; nothing after this point can be trusted
                self.at_eof = True
                raise

    def receive(self) -> list[Message]:
        """Return every complete message available without blocking.

        Partial frames stay buffered until the rest arrives. Check
        ``at_eof`` afterwards to learn whether the peer went away.

        Raises:
            ProtocolError: If the next queued frame cannot be decoded. Frames
                after it stay queued for the next call.
            NodeConfigInvalidError: If the next queued frame is well formed
                but carries an invalid node configuration. Frames after it
                stay queued as well.
        """
        if not self.closed:
            self._fill()
        messages: list[Message] = []
        while self._ready:
            payload = self._ready.popleft()
            try:
                messages.append(decode_message(payload))
            except (ProtocolError, NodeConfigInvalidError):
                if messages:
                    self._ready.appendleft(payload)
                    return messages
                raise
        return messages

    def close(self) -> None:
        """Close both descriptors of this end."""
        for fd in (self._read_fd, self._write_fd):
            if fd >= 0:
                os.close(fd)
        self._read_fd = -1
        self._write_fd = -1


@final
class Flare:
    """Self-pipe used to wake an event loop from signal context.

    ``fire`` performs a single non-blocking write and is safe to call from a
    signal handler; ``extinguish`` drains the pipe from the loop.
    """

    __slots__ = ("_read_fd", "_write_fd")

    def __init__(self) -> None:
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)

    def fileno(self) -> int:
        """Return the descriptor that becomes readable once fired."""
        return self._read_fd

    def fire(self) -> None:
        """Make the flare readable."""
        # a full pipe means the loop is already due to wake
        with contextlib.suppress(BlockingIOError):
            os.write(self._write_fd, b"!")

    def extinguish(self) -> None:
        """Drain all pending wakeups."""
        while True:
            try:
                if not os.read(self._read_fd, 4096):
                    return
            except BlockingIOError:
                return

    def close(self) -> None:
        """Close the pipe."""
        for fd in (self._read_fd, self._write_fd):
            if fd >= 0:
                os.close(fd)
        self._read_fd = -1
        self._write_fd = -1

    def descriptors(self) -> tuple[int, int]:
        """Return both pipe descriptors, e.g. to close them after fork."""
        return self._read_fd, self._write_fd
