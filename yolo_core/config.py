from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Union


@dataclass(frozen=True)
class PredictorConfig:
    """
    Configuration for a predictor: thresholds plus model-output conventions.

    - conf_threshold / iou_threshold / max_detections: initial values of the runtime thresholds
      (max_detections is the plugin's "numItemsThreshold")
    - top_k: ranked classes reported for classification
    - mask_threshold / binarize_masks: keep masks as 0/1 at `mask_threshold`, or as soft alpha
    - obb_iou: "aabb" (hull of the rotated box) or "polygon" (rotated-polygon IoU)
    - normalized_coords: model emits boxes/keypoints as 0..1 of its input instead of pixels
    - initial_capacity: candidate slots allocated up front
    """

    conf_threshold: float = 0.25
    iou_threshold: float = 0.4
    max_detections: int = 30
    top_k: int = 5
    mask_threshold: float = 0.5
    binarize_masks: bool = True
    obb_iou: str = "aabb"
    normalized_coords: bool = True
    initial_capacity: int = 256

    def __post_init__(self) -> None:
        if not 0.0 <= self.conf_threshold <= 1.0:
            raise ValueError("conf_threshold must be in [0, 1]")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ValueError("iou_threshold must be in [0, 1]")
        if self.max_detections < 1:
            raise ValueError("max_detections must be >= 1")
        if self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if not 0.0 < self.mask_threshold < 1.0:
            raise ValueError("mask_threshold must be in (0, 1)")
        if self.obb_iou not in ("aabb", "polygon"):
            raise ValueError("obb_iou must be 'aabb' or 'polygon'")
        if self.initial_capacity < 1:
            raise ValueError("initial_capacity must be >= 1")


_FLOAT_KEYS = ("conf_threshold", "iou_threshold", "mask_threshold")
_INT_KEYS = ("max_detections", "top_k", "initial_capacity")
_BOOL_KEYS = ("binarize_masks", "normalized_coords")
_STR_KEYS = ("obb_iou",)


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _require_int(payload: Dict[str, Any], key: str) -> int:
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return int(value)


def _require_bool(payload: Dict[str, Any], key: str) -> bool:
    value = payload[key]
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false")
    return value


def predictor_config_from_dict(payload: Dict[str, Any]) -> PredictorConfig:
    if not isinstance(payload, dict):
        raise ValueError("Predictor config must be a JSON object")

    allowed = set(_FLOAT_KEYS + _INT_KEYS + _BOOL_KEYS + _STR_KEYS)
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown predictor config keys: {unknown}")

    values: Dict[str, Any] = {}
    for key in _FLOAT_KEYS:
        if key in payload:
            values[key] = _require_number(payload, key)
    for key in _INT_KEYS:
        if key in payload:
            values[key] = _require_int(payload, key)
    for key in _BOOL_KEYS:
        if key in payload:
            values[key] = _require_bool(payload, key)
    for key in _STR_KEYS:
        if key in payload:
            if not isinstance(payload[key], str):
                raise ValueError(f"{key} must be a string")
            values[key] = payload[key].strip().lower()
    return PredictorConfig(**values)


def load_predictor_config(path: Union[str, Path]) -> PredictorConfig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Predictor config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid predictor config JSON: {path}") from exc
    return predictor_config_from_dict(payload)
