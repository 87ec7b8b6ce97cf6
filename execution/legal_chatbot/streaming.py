"""
Streaming Protocol Emitter

Server-Sent Events channel for one ask request:

    data: {"type": "progress", "percent": 40, "message": "..."}\n\n
    data: {"type": "progress", "percent": 75, "message": "..."}\n\n
    data: {"type": "result", "data": {...answer envelope...}}\n\n

States: Idle -> Streaming -> Terminated. Progress frames carry a
non-decreasing percentage, exactly one result frame is written, and
nothing is written after termination. Concurrent adapters write through
the same emitter; a lock keeps frames whole and in order.

The HTTP response iterates `frames()`; the orchestration thread calls
`progress()` and finally `finish()`.
"""

import json
import queue
import logging
import threading
from enum import Enum
from typing import Iterator, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

_CLOSE = object()


class EmitterState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TERMINATED = "terminated"


@dataclass
class ProgressEvent:
    """An incremental status update."""
    percent: int
    message: str

    def to_dict(self) -> dict:
        return {"type": "progress", "percent": self.percent, "message": self.message}


def format_frame(payload: dict) -> str:
    """Format one SSE data frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class StreamEmitter:
    """Serializes progress and result frames onto one SSE channel."""

    def __init__(self):
        self._queue: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._state = EmitterState.IDLE
        self._percent = 0
        self.frames_written = 0

    @property
    def state(self) -> EmitterState:
        return self._state

    @property
    def terminated(self) -> bool:
        return self._state is EmitterState.TERMINATED

    def start(self) -> None:
        with self._lock:
            if self._state is EmitterState.IDLE:
                self._state = EmitterState.STREAMING

    def _write(self, payload: dict) -> None:
        # Caller holds the lock
        self._queue.put(format_frame(payload))
        self.frames_written += 1

    def progress(self, percent: int, message: str = "") -> bool:
        """
        Emit a progress frame.

        The percentage is clamped to 0-100 and never goes backwards.

        Returns:
            False when the channel is already terminated
        """
        with self._lock:
            if self._state is EmitterState.TERMINATED:
                return False
            self._state = EmitterState.STREAMING
            percent = max(0, min(100, int(percent)))
            self._percent = max(self._percent, percent)
            self._write(ProgressEvent(self._percent, message).to_dict())
            return True

    def finish(self, envelope) -> bool:
        """
        Emit the single result frame and terminate the channel.

        Args:
            envelope: AnswerEnvelope (or an already serialized dict)

        Returns:
            False when the channel was already terminated
        """
        data = envelope.to_dict() if hasattr(envelope, "to_dict") else dict(envelope)
        with self._lock:
            if self._state is EmitterState.TERMINATED:
                return False
            self._write({"type": "result", "data": data})
            self._state = EmitterState.TERMINATED
            self._queue.put(_CLOSE)
            return True

    def close(self) -> None:
        """Terminate without a result (client went away)."""
        with self._lock:
            if self._state is EmitterState.TERMINATED:
                return
            self._state = EmitterState.TERMINATED
            self._queue.put(_CLOSE)
        logger.info("Stream closed before the result frame was written")

    def frames(self, poll_timeout: Optional[float] = None) -> Iterator[str]:
        """
        Yield frames until the channel terminates.

        Leaving the generator early (client disconnect) terminates the
        channel so later writes become no-ops.
        """
        try:
            while True:
                try:
                    frame = self._queue.get(timeout=poll_timeout)
                except queue.Empty:
                    continue
                if frame is _CLOSE:
                    return
                yield frame
        finally:
            self.close()
