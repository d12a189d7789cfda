import unittest

import numpy as np

from yolo_core.arena import CandidateArena
from yolo_core.geometry import rotated_corners
from yolo_core.nms import NMSConfig, box_iou, nms, polygon_iou, suppress


def _fill(arena, boxes, scores, class_ids=None, anchors=None, payload=None):
    n = len(scores)
    arena.reset(n)
    arena.boxes[:n] = np.asarray(boxes, dtype=np.float32)
    arena.scores[:n] = np.asarray(scores, dtype=np.float32)
    arena.class_ids[:n] = 0 if class_ids is None else np.asarray(class_ids)
    arena.anchors[:n] = np.arange(n) if anchors is None else np.asarray(anchors)
    if payload is not None:
        arena.payload[:n] = np.asarray(payload, dtype=np.float32)


class TestBoxIoU(unittest.TestCase):
    def test_values(self) -> None:
        a = np.array([0.0, 0.0, 10.0, 10.0])
        boxes = np.array([[0.0, 0.0, 10.0, 8.0], [5.0, 0.0, 15.0, 10.0], [20.0, 20.0, 30.0, 30.0]])
        iou = box_iou(a, boxes)
        self.assertAlmostEqual(float(iou[0]), 0.8)
        self.assertAlmostEqual(float(iou[1]), 50.0 / 150.0)
        self.assertEqual(float(iou[2]), 0.0)


class TestPolygonIoU(unittest.TestCase):
    def test_half_overlapping_squares(self) -> None:
        a = np.array([[0, 0], [2, 0], [2, 2], [0, 2]], dtype=np.float64)
        b = a + np.array([1.0, 0.0])
        self.assertAlmostEqual(polygon_iou(a, b), 1.0 / 3.0)

    def test_winding_order_does_not_matter(self) -> None:
        a = np.array([[0, 0], [2, 0], [2, 2], [0, 2]], dtype=np.float64)
        b = (a + np.array([1.0, 0.0]))[::-1]
        self.assertAlmostEqual(polygon_iou(a, b), 1.0 / 3.0)

    def test_disjoint_and_identical(self) -> None:
        a = np.array([[0, 0], [1, 0], [1, 1], [0, 1]], dtype=np.float64)
        self.assertEqual(polygon_iou(a, a + 5.0), 0.0)
        self.assertAlmostEqual(polygon_iou(a, a), 1.0)


class TestNMS(unittest.TestCase):
    def test_overlapping_pair_keeps_higher_score(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 8]], dtype=np.float32)
        scores = np.array([0.9, 0.8], dtype=np.float32)
        keep = nms(boxes, scores, NMSConfig(iou_threshold=0.45))
        self.assertEqual(keep.tolist(), [0])

    def test_iou_equal_to_threshold_is_kept(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 8]], dtype=np.float64)
        scores = np.array([0.9, 0.8])
        keep = nms(boxes, scores, NMSConfig(iou_threshold=0.8))
        self.assertEqual(keep.tolist(), [0, 1])

    def test_equal_scores_use_tie_break(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 10]], dtype=np.float32)
        scores = np.array([0.7, 0.7], dtype=np.float32)
        keep = nms(boxes, scores, NMSConfig(iou_threshold=0.5), tie_break=np.array([9, 3]))
        self.assertEqual(keep.tolist(), [1])

    def test_max_detections(self) -> None:
        boxes = np.array([[i * 20, 0, i * 20 + 10, 10] for i in range(5)], dtype=np.float32)
        scores = np.array([0.1, 0.5, 0.3, 0.9, 0.7], dtype=np.float32)
        keep = nms(boxes, scores, NMSConfig(iou_threshold=0.5, max_detections=2))
        self.assertEqual(keep.tolist(), [3, 4])

    def test_empty(self) -> None:
        keep = nms(np.zeros((0, 4)), np.zeros((0,)), NMSConfig())
        self.assertEqual(keep.size, 0)


class TestSuppress(unittest.TestCase):
    def test_per_class_and_agnostic(self) -> None:
        arena = CandidateArena()
        boxes = [[0.0, 0.0, 0.5, 0.5], [0.0, 0.0, 0.5, 0.45]]
        _fill(arena, boxes, [0.9, 0.8], class_ids=[0, 1])

        kept = suppress(arena, NMSConfig(iou_threshold=0.45))
        self.assertEqual(kept.tolist(), [0, 1])
        self.assertFalse(arena.suppressed[:2].any())

        _fill(arena, boxes, [0.9, 0.8], class_ids=[0, 1])
        kept = suppress(arena, NMSConfig(iou_threshold=0.45, class_agnostic=True))
        self.assertEqual(kept.tolist(), [0])
        self.assertEqual(arena.suppressed[:2].tolist(), [False, True])
        self.assertEqual(arena.kept().tolist(), [0])

    def test_output_order_and_truncation(self) -> None:
        arena = CandidateArena(capacity=2)
        boxes = [[0.1 * i, 0.0, 0.1 * i + 0.05, 0.05] for i in range(6)]
        scores = [0.3, 0.6, 0.6, 0.9, 0.4, 0.5]
        _fill(arena, boxes, scores, class_ids=[0, 1, 0, 1, 0, 1], anchors=[10, 40, 20, 50, 30, 60])

        kept = suppress(arena, NMSConfig(iou_threshold=0.5, max_detections=4))
        # 0.9, then the two 0.6 ties by anchor (20 before 40), then 0.5.
        self.assertEqual(kept.tolist(), [3, 2, 1, 5])
        self.assertEqual(int(arena.suppressed[:6].sum()), 2)

    def test_survivors_do_not_overlap(self) -> None:
        rng = np.random.default_rng(7)
        n = 200
        xy = rng.uniform(0.0, 0.8, size=(n, 2))
        wh = rng.uniform(0.02, 0.2, size=(n, 2))
        boxes = np.concatenate([xy, xy + wh], axis=1)
        scores = rng.uniform(0.25, 1.0, size=n)
        classes = rng.integers(0, 3, size=n)

        arena = CandidateArena()
        _fill(arena, boxes, scores, class_ids=classes)
        cfg = NMSConfig(iou_threshold=0.4, max_detections=n)
        kept = suppress(arena, cfg)

        self.assertTrue(np.all(np.diff(arena.scores[kept]) <= 0))
        for cls in np.unique(arena.class_ids[kept]):
            same = kept[arena.class_ids[kept] == cls]
            for pos, i in enumerate(same):
                others = same[pos + 1 :]
                if others.size:
                    self.assertTrue((box_iou(arena.boxes[i], arena.boxes[others]) <= 0.4 + 1e-6).all())

    def test_crossing_rotated_bars(self) -> None:
        # Two thin bars crossing at 90 degrees: identical hulls, small true overlap.
        corners = rotated_corners([0.5, 0.5], [0.5, 0.5], [0.6, 0.6], [0.05, 0.05], [np.pi / 4, -np.pi / 4])
        hulls = np.concatenate([corners.min(axis=1), corners.max(axis=1)], axis=1)
        payload = corners.reshape(2, 8)

        arena = CandidateArena(payload_width=8)
        _fill(arena, hulls, [0.9, 0.8], payload=payload)
        polygons = arena.payload[:2].reshape(-1, 4, 2)
        kept = suppress(arena, NMSConfig(iou_threshold=0.4, obb_iou="aabb"), polygons=polygons)
        self.assertEqual(kept.tolist(), [0])

        _fill(arena, hulls, [0.9, 0.8], payload=payload)
        polygons = arena.payload[:2].reshape(-1, 4, 2)
        kept = suppress(arena, NMSConfig(iou_threshold=0.4, obb_iou="polygon"), polygons=polygons)
        self.assertEqual(kept.tolist(), [0, 1])

    def test_empty_arena(self) -> None:
        arena = CandidateArena()
        arena.reset(0)
        self.assertEqual(suppress(arena, NMSConfig()).size, 0)


if __name__ == "__main__":
    unittest.main()
