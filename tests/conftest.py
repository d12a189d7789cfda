from __future__ import annotations

import logging
import sys
from pathlib import Path


def _ensure_repo_root_on_syspath() -> None:
    # Lets `import yolo_core` work from a plain checkout, without `pip install -e .`.
    repo_root = str(Path(__file__).resolve().parents[1])
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


_ensure_repo_root_on_syspath()


def pytest_configure(config) -> None:
    # Dropped-anchor / dropped-mask messages are debug level; show them in failure reports.
    logging.getLogger("yolo_core").setLevel(logging.DEBUG)
