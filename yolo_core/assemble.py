from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from .types import (
    BoundingBox,
    ClassProbs,
    DetectionResult,
    FrameContext,
    Keypoints,
    ObbInstance,
    ObbPayload,
    OrientedBox,
    Payload,
    PosePayload,
    Rect,
    label_for,
)


def _frozen(arr: np.ndarray, dtype=np.float32) -> np.ndarray:
    out = np.array(arr, dtype=dtype)
    out.setflags(write=False)
    return out


def build_boxes(
    class_ids: np.ndarray,
    scores: np.ndarray,
    xyxy: np.ndarray,
    xyxyn: np.ndarray,
    names: Sequence[str],
) -> Tuple[BoundingBox, ...]:
    return tuple(
        BoundingBox(
            index=int(cls_id),
            label=label_for(names, int(cls_id)),
            confidence=float(score),
            xywh=Rect(*(float(v) for v in px)),
            xywhn=Rect(*(float(v) for v in nm)),
        )
        for cls_id, score, px, nm in zip(class_ids, scores, xyxy, xyxyn)
    )


def build_keypoints(xyn: np.ndarray, xy: np.ndarray, conf: np.ndarray) -> PosePayload:
    return PosePayload(
        keypoints=tuple(
            Keypoints(xy=_frozen(xy[i]), xyn=_frozen(xyn[i]), conf=_frozen(conf[i])) for i in range(xy.shape[0])
        )
    )


def build_obb(
    polygons_n: np.ndarray,
    polygons: np.ndarray,
    box_polygons: np.ndarray,
    class_ids: np.ndarray,
    scores: np.ndarray,
    names: Sequence[str],
) -> ObbPayload:
    """
    `polygons_n` / `polygons` are the clamped vertices; `box_polygons` are the
    unclamped pixel corners the OrientedBox is read from.
    """

    return ObbPayload(
        instances=tuple(
            ObbInstance(
                box=OrientedBox.from_polygon(box_polygons[i]),
                polygon=_frozen(polygons[i]),
                polygon_n=_frozen(polygons_n[i]),
                confidence=float(scores[i]),
                index=int(class_ids[i]),
                label=label_for(names, int(class_ids[i])),
            )
            for i in range(polygons.shape[0])
        )
    )


def build_probs(indices: np.ndarray, confs: np.ndarray, names: Sequence[str]) -> ClassProbs:
    labels = tuple(label_for(names, int(i)) for i in indices)
    if len(indices) == 0:
        return ClassProbs(
            top1_label=label_for(names, -1),
            top1_index=0,
            top1_conf=0.0,
            top_labels=(),
            top_indices=(),
            top_confs=(),
        )
    return ClassProbs(
        top1_label=labels[0],
        top1_index=int(indices[0]),
        top1_conf=float(confs[0]),
        top_labels=labels,
        top_indices=tuple(int(i) for i in indices),
        top_confs=tuple(float(c) for c in confs),
    )


def assemble_result(
    frame: FrameContext,
    *,
    boxes: Sequence[BoundingBox] = (),
    payload: Payload = None,
    names: Sequence[str] = (),
    speed_ms: float = 0.0,
    fps: float = 0.0,
) -> DetectionResult:
    """
    Package one call's output. Payload/task consistency is checked by DetectionResult itself.
    """

    return DetectionResult(
        task=frame.task,
        orig_shape=frame.dest_size,
        boxes=tuple(boxes),
        payload=payload,
        speed_ms=float(speed_ms),
        fps=float(fps),
        names=tuple(names),
    )
