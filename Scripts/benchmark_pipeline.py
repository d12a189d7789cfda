from __future__ import annotations

import argparse
import logging
import time
from typing import List, Optional, Tuple

import numpy as np

from yolo_core import FrameContext, ModelSpec, Predictor, PredictorConfig, RawTensorOutput, Task, load_predictor_config


def _latency_report(label: str, samples_s: List[float], wall_s: float, detections: int) -> str:
    ms = np.asarray(samples_s, dtype=np.float64) * 1000.0
    p50, p90, p95 = np.percentile(ms, [50.0, 90.0, 95.0])
    rate = len(ms) / wall_s if wall_s > 0 else float("inf")
    return (
        f"{label}: calls={len(ms)} mean={ms.mean():.3f}ms p50={p50:.3f}ms p90={p90:.3f}ms p95={p95:.3f}ms "
        f"max={ms.max():.3f}ms rate={rate:.1f}/s mean_detections={detections / len(ms):.1f}"
    )


def _synthetic_output(
    task: Task, num_classes: int, num_anchors: int, num_coeffs: int, proto_size: int, rng: np.random.Generator
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Random raw output in (1, features, anchors) layout with normalized boxes.
    Scores are mostly low so the candidate count after filtering looks like a real frame.
    """

    cxcy = rng.uniform(0.05, 0.95, size=(2, num_anchors))
    wh = rng.uniform(0.02, 0.3, size=(2, num_anchors))
    rows = [cxcy, wh]

    if task is Task.POSE:
        rows.append(rng.beta(0.5, 8.0, size=(1, num_anchors)))
        kp = rng.uniform(0.0, 1.0, size=(17, 3, num_anchors)).reshape(51, num_anchors)
        rows.append(kp)
    else:
        rows.append(rng.beta(0.5, 8.0, size=(num_classes, num_anchors)))
        if task is Task.SEGMENT:
            rows.append(rng.normal(size=(num_coeffs, num_anchors)))
        elif task is Task.OBB:
            rows.append(rng.uniform(-np.pi / 2, np.pi / 2, size=(1, num_anchors)))

    output = np.concatenate(rows, axis=0).astype(np.float32)[None, ...]
    protos = None
    if task is Task.SEGMENT:
        protos = rng.normal(size=(1, proto_size, proto_size, num_coeffs)).astype(np.float32)
    return output, protos


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Benchmark the model-free decode -> NMS -> mapping pipeline on synthetic outputs."
    )
    parser.add_argument("--task", default="detect", help="detect / segment / pose / obb / classify.")
    parser.add_argument("--imgsz", type=int, default=640, help="Model input size (square).")
    parser.add_argument("--anchors", type=int, default=8400, help="Anchors in the synthetic output.")
    parser.add_argument("--classes", type=int, default=80, help="Number of classes.")
    parser.add_argument("--coeffs", type=int, default=32, help="Mask coefficients (segment only).")
    parser.add_argument("--proto-size", type=int, default=160, help="Prototype raster size (segment only).")
    parser.add_argument("--dest", default="1080x1920", help="Destination frame WxH.")
    parser.add_argument("--camera", action="store_true", help="Rotate for a camera frame.")
    parser.add_argument("--front", action="store_true", help="Mirror for a front camera.")
    parser.add_argument("--config", default=None, help="Optional predictor config JSON.")
    parser.add_argument("--warmup", type=int, default=10, help="Warmup calls to run but not record.")
    parser.add_argument("--calls", type=int, default=200, help="Recorded calls.")
    parser.add_argument("--min-rate", type=float, default=15.0, help="Calls/second the run must sustain.")
    parser.add_argument("--verbose", action="store_true", help="Log decode/NMS details.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.warmup < 0:
        raise ValueError("--warmup must be >= 0")
    if args.calls < 1:
        raise ValueError("--calls must be >= 1")
    if args.imgsz < 32:
        raise ValueError("--imgsz must be >= 32")
    try:
        dest_w, dest_h = (int(v) for v in str(args.dest).lower().split("x"))
    except ValueError as exc:
        raise ValueError(f"--dest must look like WxH (got {args.dest!r})") from exc

    task = Task.parse(args.task)
    cfg = load_predictor_config(args.config) if args.config else PredictorConfig()
    rng = np.random.default_rng(0)

    if task is Task.CLASSIFY:
        output = rng.dirichlet(np.ones(args.classes)).astype(np.float32)[None, :]
        protos = None
    else:
        output, protos = _synthetic_output(task, args.classes, args.anchors, args.coeffs, args.proto_size, rng)

    spec = ModelSpec(
        task=task,
        num_classes=args.classes,
        input_size=(args.imgsz, args.imgsz),
        output_shape=output.shape,
        proto_shape=None if protos is None else protos.shape,
        num_mask_coeffs=args.coeffs,
    )
    predictor = Predictor(spec, cfg)
    raw = RawTensorOutput.from_arrays(output, protos)
    frame = FrameContext(
        orig_width=dest_w,
        orig_height=dest_h,
        model_width=args.imgsz,
        model_height=args.imgsz,
        task=task,
        rotate_for_camera=bool(args.camera),
        mirror_horizontal=bool(args.front),
    )

    for _ in range(int(args.warmup)):
        predictor.predict(raw, frame)

    samples: List[float] = []
    detections = 0
    t_start = time.perf_counter()
    for _ in range(int(args.calls)):
        t0 = time.perf_counter()
        result = predictor.predict(raw, frame)
        samples.append(time.perf_counter() - t0)
        detections += len(result)
    wall = time.perf_counter() - t_start

    rate = len(samples) / wall if wall > 0 else float("inf")
    print(_latency_report(f"predict[{task.value}]", samples, wall, detections))

    if rate < float(args.min_rate):
        print(f"FAIL: {rate:.1f} calls/s is below the {args.min_rate:.1f} calls/s target")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
