from __future__ import annotations

import heapq
import logging

from telephony.codec import AudioFrame

LOGGER = logging.getLogger(__name__)


class FrameSequencer:
    """Releases frames of one direction in strictly increasing sequence order.

    Frames that arrive early are held until the missing ones show up. If more
    than ``window`` frames pile up behind a gap, the gap is skipped so a lost
    frame cannot stall the relay. Late or duplicate frames are dropped.
    """

    def __init__(self, *, start: int = 1, window: int = 50, label: str = "inbound") -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self._window = window
        self._label = label
        self._held: list[tuple[int, AudioFrame]] = []
        self._last_released = start - 1
        self.dropped = 0
        self.skipped = 0

    @property
    def last_released(self) -> int:
        return self._last_released

    def __len__(self) -> int:
        return len(self._held)

    def push(self, frame: AudioFrame) -> list[AudioFrame]:
        """Accept a frame and return every frame that is now in order."""

        seq = frame.sequence
        if seq <= self._last_released or any(held == seq for held, _ in self._held):
            self.dropped += 1
            LOGGER.debug("Dropping late/duplicate %s frame seq=%s", self._label, seq)
            return []

        heapq.heappush(self._held, (seq, frame))
        released = self._release_contiguous()

        if len(self._held) > self._window:
            missing_from = self._last_released + 1
            next_seq = self._held[0][0]
            self.skipped += next_seq - missing_from
            LOGGER.warning(
                "Skipping %s sequence gap %s..%s (%s frames held)",
                self._label,
                missing_from,
                next_seq - 1,
                len(self._held),
            )
            released.append(self._pop_next())
            released.extend(self._release_contiguous())
        return released

    def drain(self) -> list[AudioFrame]:
        """Release everything still held, in order, ignoring gaps."""

        return [self._pop_next() for _ in range(len(self._held))]

    def _pop_next(self) -> AudioFrame:
        seq, frame = heapq.heappop(self._held)
        self._last_released = seq
        return frame

    def _release_contiguous(self) -> list[AudioFrame]:
        released: list[AudioFrame] = []
        while self._held and self._held[0][0] == self._last_released + 1:
            released.append(self._pop_next())
        return released
