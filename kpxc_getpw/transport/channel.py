"""
Point-to-point channel to the running KeePassXC process.

Two framings are supported:

- SocketChannel: the browser-integration Unix socket. The peer writes bare
  JSON objects with no delimiter, so a receive completes when the buffer
  holds one balanced top-level object.
- ProxyChannel: the native-messaging proxy executable (keepassxc-proxy).
  Each message is a 4-byte native-endian length followed by UTF-8 JSON.

Both carry exactly one in-flight request; the session waits for each
response before sending the next request.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shlex
import struct
import sys
import tempfile
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from kpxc_getpw.errors import PeerConnectionError, TransportError

logger = logging.getLogger(__name__)

SERVER_NAME = "org.keepassxc.KeePassXC.BrowserServer"
FLATPAK_DIR = os.path.join("app", "org.keepassxc.KeePassXC")

# The peer reads into a 1 MiB buffer; anything larger is not a valid message.
MAX_MESSAGE_SIZE = 1024 * 1024
DEFAULT_TIMEOUT = 10.0

_READ_CHUNK = 64 * 1024
_LENGTH_HEADER = struct.Struct("=I")


@runtime_checkable
class Channel(Protocol):
    async def send(self, data: bytes) -> None: ...
    async def receive(self, timeout: Optional[float] = None) -> bytes: ...
    async def close(self) -> None: ...


def default_socket_paths() -> List[str]:
    """Well-known socket locations, most specific first."""
    paths: List[str] = []
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        paths.append(os.path.join(runtime_dir, FLATPAK_DIR, SERVER_NAME))
        paths.append(os.path.join(runtime_dir, SERVER_NAME))
    tmp_dir = os.environ.get("TMPDIR") or tempfile.gettempdir()
    paths.append(os.path.join(tmp_dir, SERVER_NAME))
    fallback = os.path.join("/tmp", SERVER_NAME)
    if fallback not in paths:
        paths.append(fallback)
    return paths


class _ObjectScanner:
    """
    Incremental scanner for the first top-level JSON object in a growing
    buffer. State carries over between calls, so each byte is looked at once.
    Multi-byte UTF-8 sequences never contain quote, brace or backslash bytes,
    so scanning raw bytes is safe.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.scanned = 0
        self._start: Optional[int] = None
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def scan(self, buf: bytes) -> Optional[Tuple[int, int]]:
        """(start, end) of the complete object, or None when more data is needed."""
        i = self.scanned
        n = len(buf)
        if self._start is None:
            while i < n and buf[i] in b" \t\r\n":
                i += 1
            self.scanned = i
            if i == n:
                return None
            if buf[i] != ord("{"):
                raise TransportError("malformed frame: expected a JSON object")
            self._start = i

        depth = self._depth
        in_string = self._in_string
        escaped = self._escaped
        for i in range(i, n):
            c = buf[i]
            if in_string:
                if escaped:
                    escaped = False
                elif c == 0x5C:  # backslash
                    escaped = True
                elif c == 0x22:  # quote
                    in_string = False
                continue
            if c == 0x22:
                in_string = True
            elif c == 0x7B:  # {
                depth += 1
            elif c == 0x7D:  # }
                depth -= 1
                if depth == 0:
                    found = (self._start, i + 1)
                    self.reset()
                    return found

        self.scanned = n
        self._depth = depth
        self._in_string = in_string
        self._escaped = escaped
        return None


def split_json_object(buf: bytes) -> Optional[Tuple[bytes, bytes]]:
    """
    Find the first complete top-level JSON object in buf.

    Returns (object_bytes, remainder) or None when more data is needed.
    Raises TransportError when the stream does not start with an object.
    """
    found = _ObjectScanner().scan(buf)
    if found is None:
        return None
    start, end = found
    return buf[start:end], buf[end:]


class _Deadline:
    def __init__(self, timeout: Optional[float]):
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._end = None if timeout is None else loop.time() + timeout

    def remaining(self) -> Optional[float]:
        if self._end is None:
            return None
        left = self._end - self._loop.time()
        if left <= 0:
            raise TransportError("timed out waiting for the peer")
        return left


class SocketChannel:
    """Unix domain socket connection to the browser-integration server."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        path: str,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ):
        self.path = path
        self.timeout = timeout
        self._reader = reader
        self._writer = writer
        self._buf = bytearray()
        self._scanner = _ObjectScanner()
        self._closed = False

    @classmethod
    async def open(cls, path: str, *, timeout: Optional[float] = DEFAULT_TIMEOUT) -> "SocketChannel":
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_unix_connection(path), timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise PeerConnectionError(f"cannot connect to {path}: {str(e) or 'timed out'}") from e
        logger.debug("connected to %s", path)
        return cls(reader, writer, path=path, timeout=timeout)

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise TransportError("channel is closed")
        if len(data) > MAX_MESSAGE_SIZE:
            raise TransportError("outgoing message too large")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, ConnectionError) as e:
            raise TransportError(f"send failed: {e}") from e
        logger.debug("sent %d bytes", len(data))

    async def receive(self, timeout: Optional[float] = None) -> bytes:
        if self._closed:
            raise TransportError("channel is closed")
        deadline = _Deadline(self.timeout if timeout is None else timeout)
        while True:
            found = self._scanner.scan(self._buf)
            if found is not None:
                start, end = found
                msg = bytes(self._buf[start:end])
                del self._buf[:end]
                logger.debug("received %d bytes", len(msg))
                return msg
            if len(self._buf) > MAX_MESSAGE_SIZE:
                raise TransportError("incoming message too large")
            try:
                chunk = await asyncio.wait_for(self._reader.read(_READ_CHUNK), deadline.remaining())
            except asyncio.TimeoutError as e:
                raise TransportError("timed out waiting for the peer") from e
            except (OSError, ConnectionError) as e:
                raise TransportError(f"receive failed: {e}") from e
            if not chunk:
                raise TransportError("peer closed the connection")
            self._buf += chunk

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug("error while closing socket: %s", e)


class ProxyChannel:
    """Native-messaging proxy process speaking length-prefixed JSON on stdio."""

    def __init__(self, process: asyncio.subprocess.Process, *, timeout: Optional[float] = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._proc = process
        self._closed = False

    @classmethod
    async def spawn(cls, command: Sequence[str], *, timeout: Optional[float] = DEFAULT_TIMEOUT) -> "ProxyChannel":
        if not command:
            raise PeerConnectionError("empty proxy command")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise PeerConnectionError(f"cannot start proxy {command[0]}: {e}") from e
        logger.debug("started proxy %s (pid %s)", command[0], proc.pid)
        return cls(proc, timeout=timeout)

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise TransportError("channel is closed")
        if len(data) > MAX_MESSAGE_SIZE:
            raise TransportError("outgoing message too large")
        try:
            self._proc.stdin.write(_LENGTH_HEADER.pack(len(data)) + data)
            await self._proc.stdin.drain()
        except (OSError, ConnectionError) as e:
            raise TransportError(f"send failed: {e}") from e
        logger.debug("sent %d bytes", len(data))

    async def receive(self, timeout: Optional[float] = None) -> bytes:
        if self._closed:
            raise TransportError("channel is closed")
        deadline = _Deadline(self.timeout if timeout is None else timeout)
        stdout = self._proc.stdout
        try:
            header = await asyncio.wait_for(stdout.readexactly(_LENGTH_HEADER.size), deadline.remaining())
            (length,) = _LENGTH_HEADER.unpack(header)
            if length > MAX_MESSAGE_SIZE:
                raise TransportError(f"malformed frame: length {length} exceeds limit")
            body = await asyncio.wait_for(stdout.readexactly(length), deadline.remaining())
        except asyncio.IncompleteReadError as e:
            raise TransportError("peer closed the connection") from e
        except asyncio.TimeoutError as e:
            raise TransportError("timed out waiting for the peer") from e
        except (OSError, ConnectionError) as e:
            raise TransportError(f"receive failed: {e}") from e
        logger.debug("received %d bytes", len(body))
        return body

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._proc.stdin is not None:
            self._proc.stdin.close()
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(self._proc.wait(), 2.0)
            except asyncio.TimeoutError:
                try:
                    self._proc.kill()
                except ProcessLookupError:
                    return
                await self._proc.wait()


async def connect(
    socket_path: Optional[str] = None,
    proxy: Optional[str] = None,
    *,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
) -> Channel:
    """
    Open a channel to the running application.

    Order: explicit proxy command, explicit socket path, first existing
    well-known socket path. Raises PeerConnectionError when none works.
    """
    if proxy:
        return await ProxyChannel.spawn(shlex.split(proxy), timeout=timeout)
    if socket_path:
        return await SocketChannel.open(socket_path, timeout=timeout)
    if sys.platform == "win32":
        raise PeerConnectionError("on Windows the peer listens on a named pipe; use a proxy command")

    for candidate in default_socket_paths():
        if os.path.exists(candidate):
            return await SocketChannel.open(candidate, timeout=timeout)
    raise PeerConnectionError(
        "KeePassXC browser integration socket not found; is KeePassXC running "
        "with browser integration enabled?"
    )
