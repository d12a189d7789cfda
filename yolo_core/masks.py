from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .decode import TensorLayout
from .geometry import CoordinateMapper
from .types import SegmentPayload

logger = logging.getLogger(__name__)

OVERLAY_ALPHA = 153

# Ultralytics overlay palette (RGB).
_PALETTE: Tuple[Tuple[int, int, int], ...] = (
    (4, 42, 255),
    (11, 219, 235),
    (243, 243, 243),
    (0, 223, 183),
    (17, 31, 104),
    (255, 111, 221),
    (255, 68, 79),
    (204, 237, 0),
    (0, 243, 68),
    (189, 0, 255),
    (0, 180, 255),
    (221, 0, 186),
    (0, 255, 255),
    (38, 192, 0),
    (1, 255, 179),
    (125, 36, 255),
    (123, 0, 104),
    (255, 27, 108),
    (252, 109, 47),
    (162, 255, 11),
)


def color_for_class_id(class_id: int) -> Tuple[int, int, int, int]:
    """
    Deterministic RGBA overlay color for a class id.
    """

    r, g, b = _PALETTE[int(class_id) % len(_PALETTE)]
    return r, g, b, OVERLAY_ALPHA


class MaskReconstructor:
    """
    Builds destination-resolution instance masks from mask coefficients and prototypes.

    For each instance: sigmoid(coeffs . protos) at prototype resolution, cropped to the
    instance box, then resampled (bilinear) straight into the destination frame through
    the inverse of the frame transform. Scratch buffers and the sampling grid are kept
    between calls.
    """

    def __init__(self, layout: TensorLayout, threshold: float = 0.5, binarize: bool = True):
        try:
            import cv2  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError("OpenCV is required for mask reconstruction. Install with `pip install opencv-python`.") from e

        self._cv2 = cv2
        self.layout = layout
        self.threshold = float(threshold)
        self.binarize = binarize
        self._scratch = np.zeros((0, layout.proto_height * layout.proto_width), dtype=np.float32)
        self._crop = np.zeros((layout.proto_height, layout.proto_width), dtype=np.float32)
        self._grid_key: Optional[Tuple] = None
        self._grid: Optional[Tuple[np.ndarray, np.ndarray]] = None

    def _protos_2d(self, protos: np.ndarray) -> np.ndarray:
        layout = self.layout
        p = np.asarray(protos, dtype=np.float32).reshape(layout.proto_shape)
        if not layout.proto_channels_first:
            p = np.transpose(p, (2, 0, 1))
        return np.ascontiguousarray(p).reshape(layout.num_mask_coeffs, -1)

    def _low_res(self, coeffs: np.ndarray, protos: np.ndarray) -> np.ndarray:
        n = coeffs.shape[0]
        if self._scratch.shape[0] < n:
            self._scratch = np.zeros((max(n, 2 * self._scratch.shape[0]), protos.shape[1]), dtype=np.float32)
        out = self._scratch[:n]
        np.matmul(coeffs, protos, out=out)
        # In-place sigmoid
        with np.errstate(over="ignore", invalid="ignore"):
            np.negative(out, out=out)
            np.exp(out, out=out)
            out += 1.0
            np.reciprocal(out, out=out)
        return out

    def _sampling_grid(self, mapper: CoordinateMapper) -> Tuple[np.ndarray, np.ndarray]:
        src = (self.layout.proto_width, self.layout.proto_height)
        key = (mapper.transform, mapper.frame.dest_size, src)
        if self._grid_key != key or self._grid is None:
            self._grid = mapper.sampling_grid(src)
            self._grid_key = key
        return self._grid

    def reconstruct(
        self,
        coeffs: np.ndarray,
        protos: Optional[np.ndarray],
        boxes: np.ndarray,
        class_ids: np.ndarray,
        mapper: CoordinateMapper,
    ) -> SegmentPayload:
        """
        Args:
            coeffs: (N, K) mask coefficients of the surviving candidates
            protos: prototype tensor in the layout's declared shape
            boxes: (N, 4) xyxy in model-input normalized space
            class_ids: (N,) class per instance (overlay color)
            mapper: coordinate mapper for this frame
        """

        n = int(coeffs.shape[0])
        if n == 0:
            return SegmentPayload(masks=())

        dest_w, dest_h = mapper.frame.dest_size
        if protos is None or coeffs.shape[1] == 0:
            logger.debug("No prototype tensor or mask coefficients; keeping boxes without masks")
            return SegmentPayload(masks=(None,) * n)

        coeffs = np.ascontiguousarray(coeffs, dtype=np.float32)
        low = self._low_res(coeffs, self._protos_2d(protos))
        map_x, map_y = self._sampling_grid(mapper)

        mh, mw = self.layout.proto_height, self.layout.proto_width
        masks: List[Optional[np.ndarray]] = []
        combined = np.zeros((dest_h, dest_w), dtype=np.float32)
        overlay = np.zeros((dest_h, dest_w, 4), dtype=np.uint8)

        for i in range(n):
            mask = self._instance_mask(low[i], boxes[i], mh, mw, map_x, map_y, i)
            masks.append(mask)
            if mask is None:
                continue
            np.maximum(combined, mask, out=combined)
            covered = mask if self.binarize else mask > self.threshold
            overlay[covered] = color_for_class_id(class_ids[i])

        if self.binarize:
            combined_out: np.ndarray = combined > 0.0
        else:
            combined_out = combined
        for arr in (*(m for m in masks if m is not None), combined_out, overlay):
            arr.setflags(write=False)
        return SegmentPayload(masks=tuple(masks), combined=combined_out, overlay=overlay)

    def _instance_mask(
        self,
        low: np.ndarray,
        box: np.ndarray,
        mh: int,
        mw: int,
        map_x: np.ndarray,
        map_y: np.ndarray,
        i: int,
    ) -> Optional[np.ndarray]:
        cv2 = self._cv2
        if not np.isfinite(low).all():
            logger.debug("Instance %d: non-finite mask values, dropping its mask", i)
            return None

        x0 = int(np.clip(np.floor(box[0] * mw), 0, mw))
        y0 = int(np.clip(np.floor(box[1] * mh), 0, mh))
        x1 = int(np.clip(np.ceil(box[2] * mw), 0, mw))
        y1 = int(np.clip(np.ceil(box[3] * mh), 0, mh))
        crop = self._crop
        crop.fill(0.0)
        if x1 > x0 and y1 > y0:
            crop[y0:y1, x0:x1] = low.reshape(mh, mw)[y0:y1, x0:x1]

        try:
            up = cv2.remap(crop, map_x, map_y, cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)
        except cv2.error as exc:
            logger.debug("Instance %d: mask resample failed (%s), dropping its mask", i, exc)
            return None

        if self.binarize:
            return up > self.threshold
        return up
