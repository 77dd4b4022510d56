# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""State shared between GStreamer streaming threads and the render loop.

Writers run on threads owned by GStreamer, the reader is whatever drives
the presentation. Both structures keep their critical sections to a
single assignment or append so that no thread ever waits on another for
longer than that.
"""

import collections
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger("event_log")
logger.setLevel(logging.INFO)

EVENT_LOG_CAPACITY = 100

# Readers give up after this long and report nothing for the tick
POLL_LOCK_TIMEOUT = 0.05


@dataclass(frozen=True)
class VideoFrame:
    width: int
    height: int
    pixels: bytes

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(f"invalid frame size {self.width}x{self.height}")
        expected = self.width * self.height * 4
        if len(self.pixels) != expected:
            raise ValueError(f"RGBA frame {self.width}x{self.height} needs {expected} bytes, got {len(self.pixels)}")


class FrameCell:
    """Single slot holding the most recent video frame.

    Frames are immutable and replaced wholesale, a reader either sees the
    previous frame or the new one.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._frame: Optional[VideoFrame] = None

    def put(self, frame: VideoFrame):
        with self._lock:
            self._frame = frame

    def poll(self) -> Optional[VideoFrame]:
        if not self._lock.acquire(timeout=POLL_LOCK_TIMEOUT):
            return None
        try:
            return self._frame
        finally:
            self._lock.release()

    def clear(self):
        with self._lock:
            self._frame = None


class EventLog:
    """Bounded, insertion ordered log of human readable events"""
    def __init__(self, capacity: int = EVENT_LOG_CAPACITY):
        self._lock = threading.Lock()
        self._entries = collections.deque(maxlen=capacity)

    def append(self, message: str, mirror: bool = True):
        with self._lock:
            self._entries.append(message)
        if mirror:
            self.mirror(message)

    @staticmethod
    def mirror(message: str):
        """Writes an entry to the event_log logger"""
        logger.info(message)

    def snapshot(self) -> List[str]:
        if not self._lock.acquire(timeout=POLL_LOCK_TIMEOUT):
            return []
        try:
            return list(self._entries)
        finally:
            self._lock.release()

    def __len__(self):
        with self._lock:
            return len(self._entries)
