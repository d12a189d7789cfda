from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from .arena import CandidateArena


@dataclass
class NMSConfig:
    iou_threshold: float = 0.45
    max_detections: int = 300
    # Pose treats every candidate as one "person" class.
    class_agnostic: bool = False
    # OBB overlap measure: "aabb" (axis-aligned hull of the rotated box) or "polygon".
    obb_iou: str = "aabb"


def box_iou(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """
    IoU of one xyxy box against (N, 4) xyxy boxes.
    """

    xx1 = np.maximum(box[0], boxes[:, 0])
    yy1 = np.maximum(box[1], boxes[:, 1])
    xx2 = np.minimum(box[2], boxes[:, 2])
    yy2 = np.minimum(box[3], boxes[:, 3])

    w = np.maximum(0.0, xx2 - xx1)
    h = np.maximum(0.0, yy2 - yy1)
    inter = w * h
    area = (box[2] - box[0]) * (box[3] - box[1])
    areas = (boxes[:, 2] - boxes[:, 0]) * (boxes[:, 3] - boxes[:, 1])
    union = area + areas - inter
    return inter / np.maximum(union, 1e-12)


def polygon_area(poly: np.ndarray) -> float:
    if len(poly) < 3:
        return 0.0
    x, y = poly[:, 0], poly[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


def _clip_polygon(subject: np.ndarray, clip: np.ndarray) -> np.ndarray:
    """
    Sutherland-Hodgman clipping of `subject` by convex `clip`. Both must share winding order.
    """

    output = [tuple(p) for p in subject]
    n = len(clip)
    for i in range(n):
        if not output:
            break
        a, b = clip[i], clip[(i + 1) % n]
        inputs, output = output, []
        for j in range(len(inputs)):
            cur = np.asarray(inputs[j])
            nxt = np.asarray(inputs[(j + 1) % len(inputs)])
            cur_in = _cross(a, b, cur) >= 0.0
            nxt_in = _cross(a, b, nxt) >= 0.0
            if cur_in and nxt_in:
                output.append(tuple(nxt))
            elif cur_in:
                hit = _intersect(cur, nxt, a, b)
                if hit is not None:
                    output.append(hit)
            elif nxt_in:
                hit = _intersect(cur, nxt, a, b)
                if hit is not None:
                    output.append(hit)
                output.append(tuple(nxt))
    return np.array(output, dtype=np.float64).reshape(-1, 2)


def _cross(a: np.ndarray, b: np.ndarray, p: np.ndarray) -> float:
    return float((b[0] - a[0]) * (p[1] - a[1]) - (b[1] - a[1]) * (p[0] - a[0]))


def _intersect(p1: np.ndarray, p2: np.ndarray, p3: np.ndarray, p4: np.ndarray):
    denom = (p1[0] - p2[0]) * (p3[1] - p4[1]) - (p1[1] - p2[1]) * (p3[0] - p4[0])
    if abs(denom) < 1e-12:
        return None
    t = ((p1[0] - p3[0]) * (p3[1] - p4[1]) - (p1[1] - p3[1]) * (p3[0] - p4[0])) / denom
    return (float(p1[0] + t * (p2[0] - p1[0])), float(p1[1] + t * (p2[1] - p1[1])))


def _ccw(poly: np.ndarray) -> np.ndarray:
    x, y = poly[:, 0], poly[:, 1]
    signed = float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))
    return poly if signed >= 0 else poly[::-1]


def polygon_iou(a: np.ndarray, b: np.ndarray) -> float:
    """
    IoU of two convex quadrilaterals, each (4, 2).
    """

    a = _ccw(np.asarray(a, dtype=np.float64).reshape(-1, 2))
    b = _ccw(np.asarray(b, dtype=np.float64).reshape(-1, 2))
    inter = polygon_area(_clip_polygon(a, b))
    union = polygon_area(a) + polygon_area(b) - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def nms(
    boxes: np.ndarray,
    scores: np.ndarray,
    cfg: NMSConfig,
    tie_break: Optional[np.ndarray] = None,
    polygons: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Greedy NumPy NMS. Expects boxes shape (N,4) in xyxy and scores shape (N,).
    Returns indices of boxes to keep, highest score first.

    Equal scores are ordered by `tie_break` (default: input order) so results are
    reproducible. With `polygons` (N, 4, 2) and `cfg.obb_iou == "polygon"`, overlap is
    measured on the rotated polygons for pairs whose hulls intersect.
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int32)

    if tie_break is None:
        tie_break = np.arange(scores.shape[0])
    order = np.lexsort((tie_break, -scores.astype(np.float64)))
    use_polygons = polygons is not None and cfg.obb_iou == "polygon"
    keep: List[int] = []

    while order.size > 0 and len(keep) < cfg.max_detections:
        i = order[0]
        keep.append(int(i))
        rest = order[1:]
        iou = box_iou(boxes[i], boxes[rest])

        if use_polygons:
            touching = iou > 0.0
            for k in np.flatnonzero(touching):
                iou[k] = polygon_iou(polygons[i], polygons[rest[k]])

        order = rest[iou <= cfg.iou_threshold]

    return np.array(keep, dtype=np.int32)


def suppress(arena: CandidateArena, cfg: NMSConfig, polygons: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Run NMS over the arena's live slots and mark the losers suppressed.

    Suppression is per class unless `cfg.class_agnostic`. Returns surviving handles,
    highest score first (anchor order on ties), truncated to `cfg.max_detections`.
    """

    n = arena.size
    if n == 0:
        return np.empty((0,), dtype=np.int32)

    boxes = arena.boxes[:n]
    scores = arena.scores[:n]
    anchors = arena.anchors[:n]
    class_ids = arena.class_ids[:n]

    if cfg.class_agnostic:
        groups = [np.arange(n)]
    else:
        groups = [np.flatnonzero(class_ids == cls) for cls in np.unique(class_ids)]

    kept: List[int] = []
    for idx in groups:
        local = nms(
            boxes[idx],
            scores[idx],
            cfg,
            tie_break=anchors[idx],
            polygons=None if polygons is None else polygons[idx],
        )
        kept.extend(idx[local].tolist())

    kept_arr = np.array(kept, dtype=np.int64)
    order = np.lexsort((anchors[kept_arr], -scores[kept_arr].astype(np.float64)))
    kept_arr = kept_arr[order][: cfg.max_detections]

    arena.suppressed[:n] = True
    arena.suppressed[kept_arr] = False
    return kept_arr
