"""Container log stream -> Server-Sent Events bridge.

The framer turns raw upstream chunks into one SSE ``data:`` record per log
line. The session owns one client's stream: it acquires the docker client and
log handle, feeds the framer from a worker thread, and releases the handle,
the cancellation token and the client in that order on every exit path.
"""
import asyncio
import concurrent.futures
import threading
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, NamedTuple, Optional

from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse

import docker_service as ds

MAX_LINE_BYTES = 1024 * 1024
DEFAULT_TAIL = "200"
HEADER_SIZE = 8
STREAM_STDOUT = 1
STREAM_STDERR = 2

OPEN_COMMENT = b": ok\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class LineTooLong(Exception):
    def __init__(self, size: int, limit: int):
        super().__init__(f"log line exceeds {limit} bytes (buffered {size})")
        self.size = size
        self.limit = limit


class LogFrame(NamedTuple):
    raw: bytes
    multiplexed: bool

    @property
    def payload(self) -> bytes:
        return self.raw[HEADER_SIZE:] if self.multiplexed else self.raw


def iter_lines(chunks: Iterable[bytes], cancel: Optional[threading.Event] = None, max_line: int = MAX_LINE_BYTES) -> Iterator[bytes]:
    """Reassemble newline-delimited lines from arbitrarily split chunks.

    The trailing segment without a newline is yielded at end of stream.
    Raises LineTooLong once a line grows past ``max_line`` bytes.
    """
    buf = bytearray()
    for chunk in chunks:
        if cancel is not None and cancel.is_set():
            return
        if not chunk:
            continue
        if b"\n" not in chunk:
            buf += chunk
            if len(buf) > max_line:
                raise LineTooLong(len(buf), max_line)
            continue
        buf += chunk
        start = 0
        while True:
            idx = buf.find(b"\n", start)
            if idx < 0:
                break
            if idx - start > max_line:
                raise LineTooLong(idx - start, max_line)
            yield bytes(buf[start:idx])
            start = idx + 1
        del buf[:start]
        if len(buf) > max_line:
            raise LineTooLong(len(buf), max_line)
    if buf and not (cancel is not None and cancel.is_set()):
        yield bytes(buf)


def detect_frame(line: bytes) -> LogFrame:
    # Cheap heuristic only: the length field in bytes 4-7 is never checked.
    multiplexed = (
        len(line) >= HEADER_SIZE
        and line[0] in (STREAM_STDOUT, STREAM_STDERR)
        and line[1] == 0
        and line[2] == 0
        and line[3] == 0
    )
    return LogFrame(line, multiplexed)


def escape_sse(text: str) -> str:
    return text.replace("\r", "").replace("\n", "\\n")


def log_line(raw: bytes) -> str:
    return detect_frame(raw).payload.decode("utf-8", errors="ignore")


def sse_event(text: str) -> bytes:
    return f"data: {escape_sse(text)}\n\n".encode("utf-8")


def frame_chunks(chunks: Iterable[bytes], cancel: Optional[threading.Event] = None, max_line: int = MAX_LINE_BYTES) -> Iterator[bytes]:
    """Raw upstream chunks in, one encoded SSE record per log line out."""
    for raw in iter_lines(chunks, cancel=cancel, max_line=max_line):
        yield sse_event(log_line(raw))


def resolve_tail(tail: Optional[str], default: str = DEFAULT_TAIL) -> str:
    return tail if tail else default


class LogStreamSession:
    """One client's live log stream for one container.

    Owned by the request that created it; nothing else keeps a reference.
    """

    def __init__(
        self,
        client_factory: Callable[[], Any],
        container_id: str,
        tail: Optional[str] = None,
        max_line: int = MAX_LINE_BYTES,
        default_tail: str = DEFAULT_TAIL,
    ):
        if not container_id:
            raise ValueError("container id required")
        self.container_id = container_id
        self.tail = resolve_tail(tail, default_tail)
        self.max_line = max_line
        self.cancel = threading.Event()
        self._client_factory = client_factory
        self._client = None
        self._stream = None
        self._closed = False
        self._close_lock = threading.Lock()
        # one worker per session: an idle follow read parks its thread indefinitely
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="logs")

    @property
    def closed(self) -> bool:
        return self._closed

    def _open(self) -> None:
        client = self._client_factory()
        with self._close_lock:
            owned = not self._closed
            if owned:
                self._client = client
        if not owned:
            # close() already ran while the client was being created
            client.close()
            return
        stream = ds.open_log_stream(client, self.container_id, self.tail)
        with self._close_lock:
            owned = not self._closed
            if owned:
                self._stream = stream
        if not owned:
            stream.close()

    async def _in_thread(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def acquire(self) -> None:
        """Open the docker client and the following log handle.

        Any failure or cancellation here releases whatever was acquired and
        re-raises; nothing has been written to the client yet.
        """
        try:
            await self._in_thread(self._open)
        except BaseException:
            self.close()
            raise
        print(f"[LOGS] open {self.container_id} tail={self.tail}")

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                print(f"[LOGS] {self.container_id} release handle: {e}")

    def close(self) -> None:
        """Release handle, cancel, close client. Safe to call more than once."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._release_stream()
        self.cancel.set()
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception as e:
                print(f"[LOGS] {self.container_id} close client: {e}")
        self._executor.shutdown(wait=False, cancel_futures=True)
        print(f"[LOGS] close {self.container_id}")

    async def events(self) -> AsyncIterator[bytes]:
        """Yield the opening comment, then one SSE record per upstream line."""
        if self._stream is None:
            self.close()
            return
        records = frame_chunks(self._stream, cancel=self.cancel, max_line=self.max_line)
        try:
            yield OPEN_COMMENT
            while not self.cancel.is_set():
                record = await self._in_thread(next, records, None)
                if record is None:
                    break
                yield record
        except LineTooLong as e:
            print(f"[LOGS] {self.container_id} stream ended: {e}")
        except Exception as e:
            # headers are already out; the stream just ends
            print(f"[LOGS] {self.container_id} read error: {e}")
        finally:
            self.close()


class LogStreamResponse(StreamingResponse):
    """SSE response bound to a session; the session is closed however the send ends."""

    def __init__(self, session: LogStreamSession):
        self.session = session
        super().__init__(session.events(), media_type="text/event-stream", headers=SSE_HEADERS)

    async def _watch_disconnect(self, receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                # unblocks the worker thread parked on the upstream read
                self.session.close()
                return

    async def __call__(self, scope, receive, send) -> None:
        watcher = asyncio.ensure_future(self._watch_disconnect(receive))
        try:
            await super().__call__(scope, receive, send)
        except ClientDisconnect:
            print(f"[LOGS] {self.session.container_id} client gone")
        finally:
            watcher.cancel()
            self.session.close()
