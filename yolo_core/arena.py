from __future__ import annotations

import numpy as np


class CandidateArena:
    """
    Pre-allocated candidate slots reused across inference calls.

    A candidate is addressed by its integer slot index (handle). Slots `[0, size)`
    hold the current call's candidates:

    - boxes: (N, 4) xyxy, normalized to the model input (axis-aligned hull for OBB)
    - scores: (N,)
    - class_ids: (N,)
    - anchors: (N,) anchor index in the raw output, used as NMS tie-break
    - payload: (N, P) task-specific values (mask coefficients / keypoints / OBB polygon)
    - suppressed: (N,) set by NMS, never cleared within a call

    Buffers only grow; a call never frees memory held for the next one.
    """

    def __init__(self, payload_width: int = 0, capacity: int = 256):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if payload_width < 0:
            raise ValueError("payload_width must be >= 0")
        self.payload_width = int(payload_width)
        self.size = 0
        self._allocate(int(capacity))

    def _allocate(self, capacity: int) -> None:
        self.capacity = capacity
        self.boxes = np.zeros((capacity, 4), dtype=np.float32)
        self.scores = np.zeros((capacity,), dtype=np.float32)
        self.class_ids = np.zeros((capacity,), dtype=np.int32)
        self.anchors = np.zeros((capacity,), dtype=np.int64)
        self.payload = np.zeros((capacity, self.payload_width), dtype=np.float32)
        self.suppressed = np.zeros((capacity,), dtype=bool)

    def reset(self, n: int) -> None:
        """
        Prepare `n` slots for a new call, growing (by doubling) if needed.
        """

        if n > self.capacity:
            capacity = self.capacity
            while capacity < n:
                capacity *= 2
            self._allocate(capacity)
        self.size = int(n)
        self.suppressed[: self.size] = False

    def kept(self) -> np.ndarray:
        return np.flatnonzero(~self.suppressed[: self.size])
