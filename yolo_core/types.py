from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np


KEYPOINT_COUNT = 17
UNKNOWN_LABEL = "Unknown"


class TensorShapeError(ValueError):
    """
    Declared tensor shape does not match the feature layout expected for a task.
    """


class Task(str, Enum):
    DETECT = "detect"
    SEGMENT = "segment"
    CLASSIFY = "classify"
    POSE = "pose"
    OBB = "obb"

    @classmethod
    def parse(cls, value: Union[str, "Task"]) -> "Task":
        if isinstance(value, Task):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported task: {value!r}") from exc


@dataclass(frozen=True)
class FrameContext:
    """
    Per-call description of the source frame and the model input it was resized to.

    `rotation` only applies when `rotate_for_camera` is set. `mirror_axis` names the
    axis flipped for front-camera frames; the plugin renders front-camera results
    flipped vertically, which is the default here.
    """

    orig_width: int
    orig_height: int
    model_width: int
    model_height: int
    task: Task = Task.DETECT
    rotate_for_camera: bool = False
    mirror_horizontal: bool = False
    rotation: int = 90
    mirror_axis: str = "vertical"

    def __post_init__(self) -> None:
        for name in ("orig_width", "orig_height", "model_width", "model_height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
                raise ValueError(f"{name} must be a positive integer (got {value!r})")
        object.__setattr__(self, "task", Task.parse(self.task))
        if self.rotation not in (90, 270):
            raise ValueError(f"rotation must be 90 or 270 (got {self.rotation!r})")
        if self.mirror_axis not in ("vertical", "horizontal"):
            raise ValueError(f"mirror_axis must be 'vertical' or 'horizontal' (got {self.mirror_axis!r})")

    @property
    def dest_size(self) -> Tuple[int, int]:
        return self.orig_width, self.orig_height

    @property
    def model_size(self) -> Tuple[int, int]:
        return self.model_width, self.model_height


@dataclass(frozen=True)
class RawTensorOutput:
    """
    Flat model output plus its declared shape.

    Segmentation models also emit a prototype tensor (`protos`), which is carried
    through to mask reconstruction untouched.
    """

    data: Any
    shape: Tuple[int, ...]
    protos: Any = None
    proto_shape: Optional[Tuple[int, ...]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape", tuple(int(s) for s in self.shape))
        size = int(np.asarray(self.data).size)
        if size != int(np.prod(self.shape)):
            raise TensorShapeError(f"Buffer of {size} values does not fit declared shape {self.shape}")
        if self.protos is not None:
            if self.proto_shape is None:
                object.__setattr__(self, "proto_shape", tuple(np.asarray(self.protos).shape))
            else:
                object.__setattr__(self, "proto_shape", tuple(int(s) for s in self.proto_shape))
            proto_size = int(np.asarray(self.protos).size)
            if proto_size != int(np.prod(self.proto_shape)):
                raise TensorShapeError(
                    f"Prototype buffer of {proto_size} values does not fit declared shape {self.proto_shape}"
                )

    @classmethod
    def from_arrays(cls, output: np.ndarray, protos: Optional[np.ndarray] = None) -> "RawTensorOutput":
        out = np.asarray(output)
        if protos is None:
            return cls(data=out, shape=out.shape)
        p = np.asarray(protos)
        return cls(data=out, shape=out.shape, protos=p, proto_shape=p.shape)

    def array(self) -> np.ndarray:
        return np.asarray(self.data, dtype=np.float32).reshape(self.shape)

    def proto_array(self) -> Optional[np.ndarray]:
        if self.protos is None:
            return None
        return np.asarray(self.protos, dtype=np.float32).reshape(self.proto_shape)


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    right: float
    bottom: float

    def __post_init__(self) -> None:
        if self.right < self.left or self.bottom < self.top:
            raise ValueError(f"Degenerate rect: {self}")

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def center(self) -> Tuple[float, float]:
        return (self.left + self.right) / 2.0, (self.top + self.bottom) / 2.0

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.left, self.top, self.right, self.bottom


@dataclass(frozen=True)
class BoundingBox:
    """
    One detection box in both destination pixel space (`xywh`) and normalized space (`xywhn`).
    """

    index: int
    label: str
    confidence: float
    xywh: Rect
    xywhn: Rect

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.xywh.as_xyxy()


@dataclass(frozen=True)
class OrientedBox:
    cx: float
    cy: float
    width: float
    height: float
    angle: float  # radians

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_polygon(self) -> np.ndarray:
        """
        Four vertices (top-left, top-right, bottom-right, bottom-left before rotation), shape (4, 2).
        """

        hw, hh = self.width / 2.0, self.height / 2.0
        local = np.array([[-hw, -hh], [hw, -hh], [hw, hh], [-hw, hh]], dtype=np.float64)
        c, s = np.cos(self.angle), np.sin(self.angle)
        rot = np.array([[c, -s], [s, c]], dtype=np.float64)
        return local @ rot.T + np.array([self.cx, self.cy], dtype=np.float64)

    @classmethod
    def from_polygon(cls, polygon: np.ndarray) -> "OrientedBox":
        p = np.asarray(polygon, dtype=np.float64).reshape(4, 2)
        center = p.mean(axis=0)
        edge_w = p[1] - p[0]
        edge_h = p[3] - p[0]
        return cls(
            cx=float(center[0]),
            cy=float(center[1]),
            width=float(np.hypot(*edge_w)),
            height=float(np.hypot(*edge_h)),
            angle=float(np.arctan2(edge_w[1], edge_w[0])),
        )


@dataclass(frozen=True)
class ObbInstance:
    box: OrientedBox  # destination pixel space
    polygon: np.ndarray  # (4, 2) pixels
    polygon_n: np.ndarray  # (4, 2) normalized
    confidence: float
    index: int
    label: str


@dataclass(frozen=True)
class Keypoints:
    xy: np.ndarray  # (17, 2) pixels
    xyn: np.ndarray  # (17, 2) normalized
    conf: np.ndarray  # (17,)

    def __post_init__(self) -> None:
        if self.xy.shape != (KEYPOINT_COUNT, 2) or self.xyn.shape != (KEYPOINT_COUNT, 2):
            raise ValueError(f"Pose instances carry exactly {KEYPOINT_COUNT} keypoints")
        if self.conf.shape != (KEYPOINT_COUNT,):
            raise ValueError(f"Expected {KEYPOINT_COUNT} keypoint confidences, got {self.conf.shape}")


@dataclass(frozen=True)
class ClassProbs:
    top1_label: str
    top1_index: int
    top1_conf: float
    top_labels: Tuple[str, ...]
    top_indices: Tuple[int, ...]
    top_confs: Tuple[float, ...]


@dataclass(frozen=True)
class SegmentPayload:
    """
    Per-instance masks aligned with the result boxes (None where reconstruction failed),
    their union, and a class-colored RGBA overlay. All at destination resolution.
    """

    masks: Tuple[Optional[np.ndarray], ...]
    combined: Optional[np.ndarray] = None
    overlay: Optional[np.ndarray] = None


@dataclass(frozen=True)
class PosePayload:
    keypoints: Tuple[Keypoints, ...]


@dataclass(frozen=True)
class ObbPayload:
    instances: Tuple[ObbInstance, ...]


Payload = Union[SegmentPayload, PosePayload, ObbPayload, ClassProbs, None]

_PAYLOAD_TYPES: Dict[Task, type] = {
    Task.DETECT: type(None),
    Task.SEGMENT: SegmentPayload,
    Task.CLASSIFY: ClassProbs,
    Task.POSE: PosePayload,
    Task.OBB: ObbPayload,
}


@dataclass(frozen=True)
class DetectionResult:
    """
    Immutable, task-tagged result of one inference call.

    The payload type is fixed by the task tag and checked on construction.
    """

    task: Task
    orig_shape: Tuple[int, int]  # (width, height)
    boxes: Tuple[BoundingBox, ...] = ()
    payload: Payload = None
    speed_ms: float = 0.0
    fps: float = 0.0
    names: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        task = Task.parse(self.task)
        object.__setattr__(self, "task", task)
        object.__setattr__(self, "boxes", tuple(self.boxes))
        object.__setattr__(self, "names", tuple(self.names))

        expected = _PAYLOAD_TYPES[task]
        if not isinstance(self.payload, expected):
            raise ValueError(
                f"{task.value} result requires payload of type {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

        n = len(self.boxes)
        if task is Task.CLASSIFY and n:
            raise ValueError("classify results carry no boxes")
        if task is Task.SEGMENT and len(self.payload.masks) != n:
            raise ValueError(f"segment result has {n} boxes but {len(self.payload.masks)} mask slots")
        if task is Task.POSE and len(self.payload.keypoints) != n:
            raise ValueError(f"pose result has {n} boxes but {len(self.payload.keypoints)} keypoint sets")
        if task is Task.OBB and len(self.payload.instances) != n:
            raise ValueError(f"obb result has {n} boxes but {len(self.payload.instances)} oriented boxes")

    @property
    def masks(self) -> Optional[SegmentPayload]:
        return self.payload if isinstance(self.payload, SegmentPayload) else None

    @property
    def keypoints(self) -> Tuple[Keypoints, ...]:
        return self.payload.keypoints if isinstance(self.payload, PosePayload) else ()

    @property
    def obb(self) -> Tuple[ObbInstance, ...]:
        return self.payload.instances if isinstance(self.payload, ObbPayload) else ()

    @property
    def probs(self) -> Optional[ClassProbs]:
        return self.payload if isinstance(self.payload, ClassProbs) else None

    def __len__(self) -> int:
        return len(self.boxes)

    def to_dict(self) -> Dict[str, Any]:
        """
        Plain-Python representation (lists, floats, strings) for the channel bridge.
        """

        out: Dict[str, Any] = {
            "task": self.task.value,
            "origShape": [int(self.orig_shape[0]), int(self.orig_shape[1])],
            "boxes": [_box_to_dict(b) for b in self.boxes],
            "speed": float(self.speed_ms),
            "fps": float(self.fps),
            "names": list(self.names),
        }
        payload = self.payload
        if isinstance(payload, SegmentPayload):
            out["masks"] = [None if m is None else m.astype(np.float32).tolist() for m in payload.masks]
        elif isinstance(payload, PosePayload):
            out["keypoints"] = [
                {"xy": kp.xy.tolist(), "xyn": kp.xyn.tolist(), "conf": kp.conf.tolist()} for kp in payload.keypoints
            ]
        elif isinstance(payload, ObbPayload):
            out["obb"] = [
                {
                    "cls": inst.label,
                    "index": inst.index,
                    "confidence": float(inst.confidence),
                    "points": inst.polygon.tolist(),
                    "pointsn": inst.polygon_n.tolist(),
                    "angle": float(inst.box.angle),
                }
                for inst in payload.instances
            ]
        elif isinstance(payload, ClassProbs):
            out["probs"] = {
                "top1": payload.top1_label,
                "top1Index": payload.top1_index,
                "top1Conf": payload.top1_conf,
                "top5": list(payload.top_labels),
                "top5Confs": list(payload.top_confs),
            }
        return out


def _box_to_dict(box: BoundingBox) -> Dict[str, Any]:
    return {
        "index": box.index,
        "cls": box.label,
        "conf": float(box.confidence),
        "xywh": list(box.xywh.as_xyxy()),
        "xywhn": list(box.xywhn.as_xyxy()),
    }


def label_for(names: Sequence[str], index: int) -> str:
    if 0 <= index < len(names):
        return names[index]
    return UNKNOWN_LABEL
