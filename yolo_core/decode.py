from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .arena import CandidateArena
from .geometry import rotated_corners
from .types import KEYPOINT_COUNT, Task, TensorShapeError

logger = logging.getLogger(__name__)

BOX_FEATURES = 4
KEYPOINT_FEATURES = KEYPOINT_COUNT * 3
OBB_POLYGON_FEATURES = 8


def expected_features(task: Task, num_classes: int, num_mask_coeffs: int = 32) -> int:
    """
    Feature count per anchor for each task's output tensor.

    - detect:   4 box + C class scores
    - segment:  4 box + C class scores + K mask coefficients
    - obb:      4 box + C class scores + 1 angle (radians)
    - pose:     4 box + 1 person score + 17 x (x, y, conf)
    - classify: C class scores, no anchors
    """

    task = Task.parse(task)
    if task is Task.DETECT:
        return BOX_FEATURES + num_classes
    if task is Task.SEGMENT:
        return BOX_FEATURES + num_classes + num_mask_coeffs
    if task is Task.OBB:
        return BOX_FEATURES + num_classes + 1
    if task is Task.POSE:
        return BOX_FEATURES + 1 + KEYPOINT_FEATURES
    return num_classes


@dataclass(frozen=True)
class TensorLayout:
    """
    Resolved, validated layout of one model's outputs. Built once per configured predictor.
    """

    task: Task
    num_classes: int
    num_features: int
    num_anchors: int
    channels_first: bool
    output_shape: Tuple[int, ...]
    num_mask_coeffs: int = 0
    proto_shape: Optional[Tuple[int, ...]] = None
    proto_channels_first: bool = False
    proto_height: int = 0
    proto_width: int = 0

    @property
    def payload_width(self) -> int:
        if self.task is Task.SEGMENT:
            return self.num_mask_coeffs
        if self.task is Task.POSE:
            return KEYPOINT_FEATURES
        if self.task is Task.OBB:
            return OBB_POLYGON_FEATURES
        return 0


def _strip_batch(shape: Sequence[int], ndim: int, what: str) -> Tuple[int, ...]:
    dims = tuple(int(s) for s in shape)
    while len(dims) > ndim and dims[0] == 1:
        dims = dims[1:]
    if len(dims) > ndim:
        raise TensorShapeError(f"Batch > 1 is not supported (got {what} shape {tuple(shape)}). Pass one image at a time.")
    if len(dims) != ndim:
        raise TensorShapeError(f"Expected a {ndim}-D {what} tensor (plus optional batch), got shape {tuple(shape)}")
    return dims


def resolve_layout(
    task: Task,
    output_shape: Sequence[int],
    num_classes: int,
    proto_shape: Optional[Sequence[int]] = None,
    num_mask_coeffs: int = 32,
) -> TensorLayout:
    """
    Check a declared output shape against the task's feature count and work out its orientation.

    Both (features, anchors) and (anchors, features) orientations are accepted, as exported
    models use either. When both dimensions match, channels-first wins.
    Raises TensorShapeError on any mismatch.
    """

    task = Task.parse(task)
    if task is Task.POSE:
        num_classes = 1
    if isinstance(num_classes, bool) or int(num_classes) < 1:
        raise ValueError(f"num_classes must be >= 1 (got {num_classes!r})")
    num_classes = int(num_classes)
    shape = tuple(int(s) for s in output_shape)
    features = expected_features(task, num_classes, num_mask_coeffs)

    if task is Task.CLASSIFY:
        dims = _strip_batch(shape, 1, "classify output")
        if dims[0] != num_classes:
            raise TensorShapeError(f"classify output shape {shape} does not carry {num_classes} class scores")
        return TensorLayout(
            task=task,
            num_classes=num_classes,
            num_features=features,
            num_anchors=0,
            channels_first=True,
            output_shape=dims,
        )

    h, w = _strip_batch(shape, 2, f"{task.value} output")
    if h == features:
        channels_first, anchors = True, w
    elif w == features:
        channels_first, anchors = False, h
    else:
        raise TensorShapeError(
            f"{task.value} output shape {shape} does not carry {features} features per anchor "
            f"(num_classes={num_classes})"
        )

    proto_dims: Optional[Tuple[int, ...]] = None
    proto_cf = False
    proto_h = proto_w = 0
    if task is Task.SEGMENT:
        if num_mask_coeffs < 1:
            raise ValueError("num_mask_coeffs must be >= 1 for segmentation models")
        if proto_shape is None:
            raise TensorShapeError("segment models require a prototype tensor shape")
        proto_dims = _strip_batch(proto_shape, 3, "prototype")
        if proto_dims[-1] == num_mask_coeffs:
            proto_h, proto_w = proto_dims[0], proto_dims[1]
        elif proto_dims[0] == num_mask_coeffs:
            proto_cf = True
            proto_h, proto_w = proto_dims[1], proto_dims[2]
        else:
            raise TensorShapeError(
                f"prototype shape {tuple(proto_shape)} does not carry {num_mask_coeffs} mask channels"
            )

    return TensorLayout(
        task=task,
        num_classes=num_classes,
        num_features=features,
        num_anchors=anchors,
        channels_first=channels_first,
        output_shape=(h, w),
        num_mask_coeffs=num_mask_coeffs if task is Task.SEGMENT else 0,
        proto_shape=proto_dims,
        proto_channels_first=proto_cf,
        proto_height=proto_h,
        proto_width=proto_w,
    )


class TensorDecoder:
    """
    Turns one raw output tensor into candidates in model-input space.

    Candidate geometry is normalized to the model input (x / model_width, y / model_height),
    which keeps non-square inputs exact. `normalized_coords` says whether the model already
    emits 0..1 box/keypoint values (typical TFLite exports) or model-input pixels.
    """

    def __init__(self, layout: TensorLayout, model_size: Tuple[int, int], normalized_coords: bool = True):
        self.layout = layout
        self.model_width, self.model_height = int(model_size[0]), int(model_size[1])
        self.normalized_coords = normalized_coords

    def features(self, raw: np.ndarray) -> np.ndarray:
        """
        View of the output as (features, anchors).
        """

        p = np.asarray(raw, dtype=np.float32)
        if p.size != int(np.prod(self.layout.output_shape)):
            raise TensorShapeError(
                f"Output of shape {p.shape} does not match configured layout {self.layout.output_shape}"
            )
        p = p.reshape(self.layout.output_shape)
        return p if self.layout.channels_first else p.T

    def decode(self, raw: np.ndarray, conf_threshold: float, arena: CandidateArena) -> int:
        """
        Decode anchors scoring at least `conf_threshold` into `arena`; returns the candidate count.

        Anchors with non-finite values, out-of-range scores or non-positive width/height
        are dropped.
        """

        layout = self.layout
        if layout.task is Task.CLASSIFY:
            raise ValueError("classify outputs have no anchors; use decode_scores()")

        f = self.features(raw)
        n_anchors = f.shape[1]
        nc = layout.num_classes

        # Scores
        if layout.task is Task.POSE:
            scores = f[BOX_FEATURES]
            class_ids = np.zeros((n_anchors,), dtype=np.int32)
        else:
            class_scores = f[BOX_FEATURES : BOX_FEATURES + nc]
            class_ids = np.argmax(class_scores, axis=0)
            scores = class_scores[class_ids, np.arange(n_anchors)]

        with np.errstate(invalid="ignore"):
            keep = np.isfinite(scores) & (scores >= conf_threshold) & (scores <= 1.0)
        idx = np.flatnonzero(keep)
        if idx.size == 0:
            arena.reset(0)
            return 0

        # Box decode (survivors only)
        sx, sy = (1.0, 1.0) if self.normalized_coords else (1.0 / self.model_width, 1.0 / self.model_height)
        cx = f[0, idx] * sx
        cy = f[1, idx] * sy
        w = f[2, idx] * sx
        h = f[3, idx] * sy
        with np.errstate(invalid="ignore"):
            valid = np.isfinite(cx) & np.isfinite(cy) & np.isfinite(w) & np.isfinite(h) & (w > 0) & (h > 0)

        payload: Optional[np.ndarray] = None
        boxes: Optional[np.ndarray] = None
        if layout.task is Task.SEGMENT:
            # Coefficients are not validated here: a bad mask only costs that instance's mask.
            base = BOX_FEATURES + nc
            payload = f[base : base + layout.num_mask_coeffs, idx].T
        elif layout.task is Task.POSE:
            kp = f[BOX_FEATURES + 1 : BOX_FEATURES + 1 + KEYPOINT_FEATURES, idx].T.reshape(-1, KEYPOINT_COUNT, 3)
            valid &= np.isfinite(kp).all(axis=(1, 2))
            kp[..., 0] *= sx
            kp[..., 1] *= sy
            np.clip(kp[..., 2], 0.0, 1.0, out=kp[..., 2])
            payload = kp.reshape(-1, KEYPOINT_FEATURES)
        elif layout.task is Task.OBB:
            angle = f[BOX_FEATURES + nc, idx]
            valid &= np.isfinite(angle)
            # Rotate in model pixels so non-square inputs keep right angles, then normalize.
            corners = rotated_corners(
                cx * self.model_width,
                cy * self.model_height,
                w * self.model_width,
                h * self.model_height,
                np.where(np.isfinite(angle), angle, 0.0),
            )
            corners[..., 0] /= self.model_width
            corners[..., 1] /= self.model_height
            payload = corners.reshape(-1, OBB_POLYGON_FEATURES).astype(np.float32)
            boxes = np.concatenate([corners.min(axis=1), corners.max(axis=1)], axis=1)

        if boxes is None:
            boxes = np.stack([cx - w / 2, cy - h / 2, cx + w / 2, cy + h / 2], axis=1)

        dropped = int(valid.size - np.count_nonzero(valid))
        if dropped:
            logger.debug("Dropped %d degenerate %s anchors", dropped, layout.task.value)

        n = int(np.count_nonzero(valid))
        arena.reset(n)
        if n == 0:
            return 0
        arena.boxes[:n] = boxes[valid]
        arena.scores[:n] = scores[idx][valid]
        arena.class_ids[:n] = class_ids[idx][valid]
        arena.anchors[:n] = idx[valid]
        if payload is not None:
            arena.payload[:n] = payload[valid]
        return n

    def decode_scores(self, raw: np.ndarray) -> np.ndarray:
        if self.layout.task is not Task.CLASSIFY:
            raise ValueError(f"{self.layout.task.value} outputs are decoded with decode()")
        return self.features(raw)


def rank_classes(scores: np.ndarray, top_k: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Top-k class indices and scores, highest first; ties keep class order. Non-finite scores are skipped.
    """

    s = np.asarray(scores, dtype=np.float32).ravel()
    idx = np.flatnonzero(np.isfinite(s))
    order = idx[np.lexsort((idx, -s[idx]))][: max(int(top_k), 0)]
    return order, s[order]
