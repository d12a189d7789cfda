"""
YOLO output decoding for detect / segment / classify / pose / obb models.

Turns a raw output tensor plus frame metadata into one immutable, task-tagged
result: anchors are decoded and filtered, overlapping candidates suppressed, and
every geometry kind mapped to the destination image through the same
rotation/mirror transform. Works on NumPy arrays; OpenCV is used for mask
resampling.
"""

from .types import (
    BoundingBox,
    ClassProbs,
    DetectionResult,
    FrameContext,
    Keypoints,
    ObbInstance,
    ObbPayload,
    OrientedBox,
    PosePayload,
    RawTensorOutput,
    Rect,
    SegmentPayload,
    Task,
    TensorShapeError,
)
from .arena import CandidateArena
from .decode import TensorDecoder, TensorLayout, rank_classes, resolve_layout
from .nms import NMSConfig, box_iou, nms, polygon_iou, suppress
from .geometry import CoordinateMapper, FrameTransform
from .masks import MaskReconstructor, color_for_class_id
from .assemble import assemble_result
from .config import PredictorConfig, load_predictor_config
from .metadata import ModelMetadata, load_class_names, load_model_metadata
from .runtime import InferenceTimer, ModelSpec, Predictor, Thresholds

__all__ = [
    "BoundingBox",
    "ClassProbs",
    "DetectionResult",
    "FrameContext",
    "Keypoints",
    "ObbInstance",
    "ObbPayload",
    "OrientedBox",
    "PosePayload",
    "RawTensorOutput",
    "Rect",
    "SegmentPayload",
    "Task",
    "TensorShapeError",
    "CandidateArena",
    "TensorDecoder",
    "TensorLayout",
    "rank_classes",
    "resolve_layout",
    "NMSConfig",
    "box_iou",
    "nms",
    "polygon_iou",
    "suppress",
    "CoordinateMapper",
    "FrameTransform",
    "MaskReconstructor",
    "color_for_class_id",
    "assemble_result",
    "PredictorConfig",
    "load_predictor_config",
    "ModelMetadata",
    "load_class_names",
    "load_model_metadata",
    "InferenceTimer",
    "ModelSpec",
    "Predictor",
    "Thresholds",
]
