from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .types import UNKNOWN_LABEL, Task


@dataclass(frozen=True)
class ModelMetadata:
    names: Tuple[str, ...]
    task: Optional[Task] = None
    imgsz: Optional[Tuple[int, int]] = None  # (width, height)
    kpt_shape: Optional[Tuple[int, int]] = None


def _strip(value: str) -> str:
    return value.strip().strip("'").strip('"')


def _inline_ints(value: str) -> List[int]:
    # "[640, 640]" / "640"
    body = value.strip().lstrip("[").rstrip("]")
    return [int(v) for v in (p.strip() for p in body.split(",")) if v.lstrip("-").isdigit()]


def load_model_metadata(metadata_path: str) -> ModelMetadata:
    """
    Load the exported model's `metadata.yaml`:

        task: detect
        imgsz:
        - 640
        - 480
        names:
          0: person
          1: bicycle
        kpt_shape: [17, 3]

    Only the keys above are read; everything else is ignored. Gaps in the class ids
    are filled with "Unknown". This function intentionally avoids adding a PyYAML
    dependency.
    """

    names, task, imgsz, kpt_shape = _read_metadata(metadata_path)
    ordered = tuple(names.get(i, UNKNOWN_LABEL) for i in range(max(names) + 1)) if names else ()
    return ModelMetadata(names=ordered, task=task, imgsz=imgsz, kpt_shape=kpt_shape)


def _read_metadata(metadata_path: str):
    names: Dict[int, str] = {}
    task: Optional[Task] = None
    lists: Dict[str, List[int]] = {}
    section: Optional[str] = None

    with open(metadata_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue

            top_level = not raw[:1].isspace() and not line.startswith("-")
            if top_level:
                key, _, value = line.partition(":")
                key = key.strip()
                value = value.strip()
                section = key if not value else None
                if key == "task" and value:
                    task = Task.parse(_strip(value))
                elif key in ("imgsz", "kpt_shape") and value:
                    lists[key] = _inline_ints(value)
                continue

            if section == "names":
                # Parse "id: label"
                if ":" not in line:
                    continue
                left, right = line.split(":", 1)
                left = left.strip()
                if not left.isdigit():
                    continue
                names[int(left)] = _strip(right)
            elif section in ("imgsz", "kpt_shape") and line.startswith("-"):
                item = line[1:].strip()
                if item.isdigit():
                    lists.setdefault(section, []).append(int(item))

    imgsz: Optional[Tuple[int, int]] = None
    size = lists.get("imgsz")
    if size:
        # Exported imgsz is (height, width); a single value means square.
        h, w = (size[0], size[0]) if len(size) == 1 else (size[0], size[1])
        imgsz = (w, h)

    kpt = lists.get("kpt_shape")
    kpt_shape = (kpt[0], kpt[1]) if kpt and len(kpt) >= 2 else None

    return names, task, imgsz, kpt_shape


def load_class_names(metadata_path: str) -> Dict[int, str]:
    """
    Class-name mapping only, `{class_id: name}`.
    """

    names, _, _, _ = _read_metadata(metadata_path)
    return names
