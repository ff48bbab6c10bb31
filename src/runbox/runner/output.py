from __future__ import annotations
import threading
from typing import BinaryIO, Callable, Optional

CHUNK = 64 * 1024


class CappedStream:
    """
    Drains one pipe on its own thread and keeps at most `limit` bytes.

    Once the program has written more than `limit` bytes the stream stops
    reading, marks itself truncated and calls `on_overflow` so the supervisor
    can kill the sandbox. Host memory used per stream is bounded by
    limit + CHUNK.
    """

    def __init__(self, pipe: BinaryIO, limit: int, on_overflow: Callable[[], None], name: str = "stdout"):
        self.pipe = pipe
        self.limit = limit
        self.on_overflow = on_overflow
        self.name = name
        self.truncated = False
        self._buf = bytearray()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "CappedStream":
        self._thread = threading.Thread(target=self._pump, name=f"runbox-{self.name}", daemon=True)
        self._thread.start()
        return self

    def _pump(self) -> None:
        try:
            while True:
                chunk = self.pipe.read1(CHUNK)
                if not chunk:
                    return
                room = self.limit - len(self._buf)
                if len(chunk) > room:
                    self._buf += chunk[:room]
                    self.truncated = True
                    self.on_overflow()
                    return
                self._buf += chunk
        except (OSError, ValueError):
            # pipe closed under us during teardown
            return

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def data(self) -> bytes:
        return bytes(self._buf)


class StdinFeeder:
    """Writes the job's stdin on a thread so a program that never reads cannot block the worker."""

    def __init__(self, pipe: BinaryIO, payload: bytes):
        self.pipe = pipe
        self.payload = payload
        self._thread = threading.Thread(target=self._feed, name="runbox-stdin", daemon=True)

    def start(self) -> "StdinFeeder":
        self._thread.start()
        return self

    def _feed(self) -> None:
        try:
            self.pipe.write(self.payload)
        except (BrokenPipeError, OSError, ValueError):
            # the program exited or closed stdin early
            pass
        finally:
            try:
                self.pipe.close()
            except OSError:
                pass

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)
