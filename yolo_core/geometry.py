from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .types import FrameContext


def rotated_corners(cx, cy, w, h, angle) -> np.ndarray:
    """
    Corners of rotated rectangles, shape (N, 4, 2), ordered top-left, top-right,
    bottom-right, bottom-left in the box's own frame.
    """

    cx = np.asarray(cx, dtype=np.float64).reshape(-1)
    cy = np.asarray(cy, dtype=np.float64).reshape(-1)
    hw = np.asarray(w, dtype=np.float64).reshape(-1) / 2.0
    hh = np.asarray(h, dtype=np.float64).reshape(-1) / 2.0
    angle = np.asarray(angle, dtype=np.float64).reshape(-1)
    c, s = np.cos(angle), np.sin(angle)

    local = np.stack(
        [
            np.stack([-hw, -hh], axis=1),
            np.stack([hw, -hh], axis=1),
            np.stack([hw, hh], axis=1),
            np.stack([-hw, hh], axis=1),
        ],
        axis=1,
    )  # (N, 4, 2)
    x = c[:, None] * local[..., 0] - s[:, None] * local[..., 1] + cx[:, None]
    y = s[:, None] * local[..., 0] + c[:, None] * local[..., 1] + cy[:, None]
    return np.stack([x, y], axis=2)


_IDENTITY = np.eye(3, dtype=np.float64)
# (x, y) -> (y, 1 - x)
_ROT90 = np.array([[0.0, 1.0, 0.0], [-1.0, 0.0, 1.0], [0.0, 0.0, 1.0]])
# (x, y) -> (1 - y, x)
_ROT270 = np.array([[0.0, -1.0, 1.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
# (x, y) -> (x, 1 - y)
_FLIP_VERTICAL = np.array([[1.0, 0.0, 0.0], [0.0, -1.0, 1.0], [0.0, 0.0, 1.0]])
# (x, y) -> (1 - x, y)
_FLIP_HORIZONTAL = np.array([[-1.0, 0.0, 1.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])


@dataclass(frozen=True)
class FrameTransform:
    """
    Model-input normalized space -> destination normalized space.

    Rotation (camera frames) is applied first, then the front-camera mirror. Every
    geometry kind goes through `apply`; rasters go through `inverse` when they are
    resampled, so points and masks cannot drift apart.
    """

    rotation: int = 0
    mirror: Optional[str] = None

    @classmethod
    def from_frame(cls, frame: FrameContext) -> "FrameTransform":
        return cls(
            rotation=frame.rotation if frame.rotate_for_camera else 0,
            mirror=frame.mirror_axis if frame.mirror_horizontal else None,
        )

    @property
    def matrix(self) -> np.ndarray:
        rot = {0: _IDENTITY, 90: _ROT90, 270: _ROT270}[self.rotation]
        flip = {None: _IDENTITY, "vertical": _FLIP_VERTICAL, "horizontal": _FLIP_HORIZONTAL}[self.mirror]
        return flip @ rot

    @property
    def is_identity(self) -> bool:
        return self.rotation == 0 and self.mirror is None

    def apply(self, points: np.ndarray) -> np.ndarray:
        return _affine(points, self.matrix)

    def inverse(self, points: np.ndarray) -> np.ndarray:
        return _affine(points, np.linalg.inv(self.matrix))


def _affine(points: np.ndarray, m: np.ndarray) -> np.ndarray:
    p = np.asarray(points, dtype=np.float64)
    flat = p.reshape(-1, 2)
    out = flat @ m[:2, :2].T + m[:2, 2]
    return out.reshape(p.shape)


def sampling_grid(
    transform: FrameTransform,
    dest_size: Tuple[int, int],
    src_size: Tuple[int, int],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per-destination-pixel source coordinates for `cv2.remap`.

    Destination pixel centers are normalized, sent back through the inverse transform
    and scaled to the source raster (pixel centers at +0.5).
    """

    dest_w, dest_h = dest_size
    src_w, src_h = src_size
    xs = (np.arange(dest_w, dtype=np.float64) + 0.5) / dest_w
    ys = (np.arange(dest_h, dtype=np.float64) + 0.5) / dest_h
    gx, gy = np.meshgrid(xs, ys)
    src = transform.inverse(np.stack([gx, gy], axis=-1))
    map_x = (src[..., 0] * src_w - 0.5).astype(np.float32)
    map_y = (src[..., 1] * src_h - 0.5).astype(np.float32)
    return map_x, map_y


class CoordinateMapper:
    """
    Maps candidate geometry from model-input space to the destination image.

    Every method returns a (normalized, pixel) pair. Normalized values are clamped to
    [0, 1] before and after the transform; rotations and flips keep that range, so all
    outputs stay in range for every rotation/mirror combination. Pixel values are the
    normalized ones scaled per axis by the destination size.
    """

    def __init__(self, frame: FrameContext):
        self.frame = frame
        self.transform = FrameTransform.from_frame(frame)
        self.scale = np.array([frame.orig_width, frame.orig_height], dtype=np.float64)

    def map_points(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        p = np.clip(np.asarray(points, dtype=np.float64), 0.0, 1.0)
        norm = np.clip(self.transform.apply(p), 0.0, 1.0)
        return norm, norm * self.scale

    def map_boxes(self, xyxy: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        (N, 4) xyxy boxes -> (N, 4) xyxy boxes. Corners are transformed and re-hulled,
        so left <= right and top <= bottom hold after any rotation or flip.
        """

        b = np.asarray(xyxy, dtype=np.float64).reshape(-1, 4)
        corners = np.stack(
            [b[:, [0, 1]], b[:, [2, 1]], b[:, [2, 3]], b[:, [0, 3]]],
            axis=1,
        )
        norm, _ = self.map_points(corners)
        hull = np.concatenate([norm.min(axis=1), norm.max(axis=1)], axis=1)
        return hull, hull * np.tile(self.scale, 2)

    def map_polygons(self, polygons: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return self.map_points(np.asarray(polygons, dtype=np.float64).reshape(-1, 4, 2))

    def project(self, points: np.ndarray) -> np.ndarray:
        """
        Destination pixel coordinates without clamping.

        Rotated boxes that cross the frame edge keep their rectangle shape here, so
        centre, size and angle can be read back from the corners.
        """

        return self.transform.apply(np.asarray(points, dtype=np.float64)) * self.scale

    def map_keypoints(self, keypoints: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        (N, K, 3) keypoints -> normalized (N, K, 2), pixel (N, K, 2), confidence (N, K).
        """

        kp = np.asarray(keypoints, dtype=np.float64)
        norm, pix = self.map_points(kp[..., :2])
        return norm, pix, kp[..., 2]

    def sampling_grid(self, src_size: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
        return sampling_grid(self.transform, self.frame.dest_size, src_size)
