from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Optional, Sequence, Tuple

import numpy as np

from .arena import CandidateArena
from .assemble import assemble_result, build_boxes, build_keypoints, build_obb, build_probs
from .config import PredictorConfig
from .decode import TensorDecoder, rank_classes, resolve_layout
from .geometry import CoordinateMapper
from .masks import MaskReconstructor
from .metadata import ModelMetadata
from .nms import NMSConfig, suppress
from .types import KEYPOINT_COUNT, DetectionResult, FrameContext, RawTensorOutput, Task


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    """
    What the predictor needs to know about a model, fixed at configuration time.

    input_size is (width, height); the two are independent.
    """

    task: Task
    num_classes: int
    input_size: Tuple[int, int]
    output_shape: Tuple[int, ...]
    proto_shape: Optional[Tuple[int, ...]] = None
    num_mask_coeffs: int = 32
    names: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "task", Task.parse(self.task))
        object.__setattr__(self, "output_shape", tuple(int(s) for s in self.output_shape))
        if self.proto_shape is not None:
            object.__setattr__(self, "proto_shape", tuple(int(s) for s in self.proto_shape))
        object.__setattr__(self, "names", tuple(self.names))
        w, h = self.input_size
        if w <= 0 or h <= 0:
            raise ValueError(f"input_size must be positive (got {self.input_size})")
        object.__setattr__(self, "input_size", (int(w), int(h)))

    @classmethod
    def from_metadata(
        cls,
        meta: ModelMetadata,
        output_shape: Sequence[int],
        proto_shape: Optional[Sequence[int]] = None,
        task: Optional[Task] = None,
        input_size: Optional[Tuple[int, int]] = None,
        num_mask_coeffs: int = 32,
    ) -> "ModelSpec":
        chosen_task = task if task is not None else meta.task
        if chosen_task is None:
            raise ValueError("Model metadata has no task; pass task=... explicitly.")
        size = input_size if input_size is not None else meta.imgsz
        if size is None:
            raise ValueError("Model metadata has no imgsz; pass input_size=... explicitly.")
        if meta.kpt_shape is not None and meta.kpt_shape != (KEYPOINT_COUNT, 3):
            raise ValueError(f"Only COCO {KEYPOINT_COUNT}x3 keypoints are supported (got {meta.kpt_shape})")
        chosen_task = Task.parse(chosen_task)
        return cls(
            task=chosen_task,
            num_classes=1 if chosen_task is Task.POSE else max(len(meta.names), 1),
            input_size=size,
            output_shape=tuple(output_shape),
            proto_shape=None if proto_shape is None else tuple(proto_shape),
            num_mask_coeffs=num_mask_coeffs,
            names=meta.names,
        )


@dataclass(frozen=True)
class Thresholds:
    confidence: float
    iou: float
    max_detections: int

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence threshold must be in [0, 1] (got {self.confidence})")
        if not 0.0 <= self.iou <= 1.0:
            raise ValueError(f"iou threshold must be in [0, 1] (got {self.iou})")
        if isinstance(self.max_detections, bool) or self.max_detections < 1:
            raise ValueError(f"max detections must be >= 1 (got {self.max_detections})")


class InferenceTimer:
    """
    Smoothed processing time and frame rate (exponential moving average, factor 0.05).
    """

    SMOOTHING = 0.05

    def __init__(self, clock=time.perf_counter):
        self.clock = clock
        self._last_end: Optional[float] = None
        self.speed_s = 0.0
        self.interval_s = 0.0

    def update(self, start: float, end: float) -> None:
        a = self.SMOOTHING
        elapsed = end - start
        self.speed_s = elapsed if self.speed_s == 0.0 else a * elapsed + (1.0 - a) * self.speed_s
        if self._last_end is not None:
            interval = end - self._last_end
            self.interval_s = interval if self.interval_s == 0.0 else a * interval + (1.0 - a) * self.interval_s
        self._last_end = end

    @property
    def fps(self) -> float:
        return 1.0 / self.interval_s if self.interval_s > 0 else 0.0


class Predictor:
    """
    Decode -> NMS -> coordinate mapping (-> masks) -> result, for one configured model.

    The output layout is validated here, once; a mismatch raises TensorShapeError.
    `predict` is synchronous and not reentrant: run it from one worker thread at a time.
    Working buffers (candidate slots, mask scratch) are reused across calls; returned
    results share nothing with them.
    """

    def __init__(self, spec: ModelSpec, cfg: PredictorConfig = PredictorConfig()):
        self.spec = spec
        self.cfg = cfg
        self.layout = resolve_layout(
            spec.task,
            spec.output_shape,
            spec.num_classes,
            proto_shape=spec.proto_shape,
            num_mask_coeffs=spec.num_mask_coeffs,
        )
        self.decoder = TensorDecoder(self.layout, spec.input_size, normalized_coords=cfg.normalized_coords)
        self.arena = CandidateArena(payload_width=self.layout.payload_width, capacity=cfg.initial_capacity)
        self.masks: Optional[MaskReconstructor] = None
        if spec.task is Task.SEGMENT:
            self.masks = MaskReconstructor(self.layout, threshold=cfg.mask_threshold, binarize=cfg.binarize_masks)
        self.timer = InferenceTimer()
        self._thresholds = Thresholds(cfg.conf_threshold, cfg.iou_threshold, cfg.max_detections)

        logger.info(
            "Configured %s predictor: input %dx%d, output %s (%s), %d classes",
            spec.task.value,
            spec.input_size[0],
            spec.input_size[1],
            self.layout.output_shape,
            "features-first" if self.layout.channels_first else "anchors-first",
            self.layout.num_classes,
        )

    # ------------------------------------------------------------------ #
    # Thresholds
    # ------------------------------------------------------------------ #
    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    def set_confidence_threshold(self, conf: float) -> None:
        self._thresholds = replace(self._thresholds, confidence=float(conf))

    def set_iou_threshold(self, iou: float) -> None:
        self._thresholds = replace(self._thresholds, iou=float(iou))

    def set_num_items_threshold(self, n: int) -> None:
        if isinstance(n, bool) or not isinstance(n, (int, np.integer)):
            raise ValueError(f"num items threshold must be an integer (got {n!r})")
        self._thresholds = replace(self._thresholds, max_detections=int(n))

    # ------------------------------------------------------------------ #
    # Inference
    # ------------------------------------------------------------------ #
    def predict(self, raw: RawTensorOutput, frame: FrameContext) -> DetectionResult:
        if frame.task is not self.spec.task:
            raise ValueError(f"Frame is tagged {frame.task.value} but the model is {self.spec.task.value}")
        if frame.model_size != self.spec.input_size:
            raise ValueError(f"Frame model size {frame.model_size} != configured input size {self.spec.input_size}")

        start = self.timer.clock()
        th = self._thresholds  # one snapshot per call
        names = self.spec.names

        if self.spec.task is Task.CLASSIFY:
            indices, confs = rank_classes(self.decoder.decode_scores(raw.array()), self.cfg.top_k)
            payload = build_probs(indices, confs, names)
            return self._finish(start, frame, payload=payload)

        self.decoder.decode(raw.array(), th.confidence, self.arena)
        nms_cfg = NMSConfig(
            iou_threshold=th.iou,
            max_detections=th.max_detections,
            class_agnostic=self.spec.task is Task.POSE,
            obb_iou=self.cfg.obb_iou,
        )
        polygons = None
        if self.spec.task is Task.OBB:
            polygons = self.arena.payload[: self.arena.size].reshape(-1, 4, 2)
        kept = suppress(self.arena, nms_cfg, polygons=polygons)

        mapper = CoordinateMapper(frame)
        arena = self.arena
        class_ids = arena.class_ids[kept]
        scores = arena.scores[kept]
        model_boxes = arena.boxes[kept]
        xyxyn, xyxy = mapper.map_boxes(model_boxes)
        boxes = build_boxes(class_ids, scores, xyxy, xyxyn, names)

        task = self.spec.task
        if task is Task.DETECT:
            payload = None
        elif task is Task.SEGMENT:
            payload = self.masks.reconstruct(
                arena.payload[kept],
                raw.proto_array(),
                model_boxes,
                class_ids,
                mapper,
            )
        elif task is Task.POSE:
            xyn, xy, conf = mapper.map_keypoints(arena.payload[kept].reshape(-1, KEYPOINT_COUNT, 3))
            payload = build_keypoints(xyn, xy, conf)
        else:
            corners = arena.payload[kept].reshape(-1, 4, 2)
            polys_n, polys = mapper.map_polygons(corners)
            payload = build_obb(polys_n, polys, mapper.project(corners), class_ids, scores, names)

        return self._finish(start, frame, boxes=boxes, payload=payload)

    def _finish(self, start: float, frame: FrameContext, boxes=(), payload=None) -> DetectionResult:
        end = self.timer.clock()
        self.timer.update(start, end)
        return assemble_result(
            frame,
            boxes=boxes,
            payload=payload,
            names=self.spec.names,
            speed_ms=(end - start) * 1000.0,
            fps=self.timer.fps,
        )
