import unittest

import numpy as np

from yolo_core.arena import CandidateArena
from yolo_core.decode import TensorDecoder, expected_features, rank_classes, resolve_layout
from yolo_core.types import Task, TensorShapeError


def _channels_first(anchors):
    # One row per anchor -> (1, features, anchors)
    return np.asarray(anchors, dtype=np.float32).T[None, ...]


class TestResolveLayout(unittest.TestCase):
    def test_expected_features_per_task(self) -> None:
        self.assertEqual(expected_features(Task.DETECT, 80), 84)
        self.assertEqual(expected_features(Task.SEGMENT, 80, 32), 116)
        self.assertEqual(expected_features(Task.OBB, 15), 20)
        self.assertEqual(expected_features(Task.POSE, 1), 56)
        self.assertEqual(expected_features(Task.CLASSIFY, 1000), 1000)

    def test_channels_first_and_last(self) -> None:
        first = resolve_layout(Task.DETECT, (1, 84, 8400), 80)
        self.assertTrue(first.channels_first)
        self.assertEqual(first.num_anchors, 8400)

        last = resolve_layout(Task.DETECT, (1, 2100, 84), 80)
        self.assertFalse(last.channels_first)
        self.assertEqual(last.num_anchors, 2100)

    def test_feature_mismatch_raises(self) -> None:
        with self.assertRaises(TensorShapeError):
            resolve_layout(Task.DETECT, (1, 85, 8400), 80)
        with self.assertRaises(TensorShapeError):
            resolve_layout(Task.POSE, (1, 57, 2100), 1)

    def test_batch_greater_than_one_rejected(self) -> None:
        with self.assertRaises(TensorShapeError):
            resolve_layout(Task.DETECT, (2, 84, 8400), 80)

    def test_segment_requires_prototypes(self) -> None:
        with self.assertRaises(TensorShapeError):
            resolve_layout(Task.SEGMENT, (1, 116, 2100), 80)

        hwc = resolve_layout(Task.SEGMENT, (1, 116, 2100), 80, proto_shape=(1, 80, 96, 32))
        self.assertFalse(hwc.proto_channels_first)
        self.assertEqual((hwc.proto_height, hwc.proto_width), (80, 96))

        chw = resolve_layout(Task.SEGMENT, (1, 116, 2100), 80, proto_shape=(1, 32, 80, 96))
        self.assertTrue(chw.proto_channels_first)
        self.assertEqual((chw.proto_height, chw.proto_width), (80, 96))

        with self.assertRaises(TensorShapeError):
            resolve_layout(Task.SEGMENT, (1, 116, 2100), 80, proto_shape=(1, 80, 80, 16))

    def test_classify_shape(self) -> None:
        layout = resolve_layout(Task.CLASSIFY, (1, 1000), 1000)
        self.assertEqual(layout.output_shape, (1000,))
        with self.assertRaises(TensorShapeError):
            resolve_layout(Task.CLASSIFY, (1, 999), 1000)

    def test_pose_ignores_declared_class_count(self) -> None:
        layout = resolve_layout(Task.POSE, (1, 56, 8400), 80)
        self.assertEqual(layout.num_classes, 1)
        self.assertEqual(layout.payload_width, 51)


class TestTensorDecoder(unittest.TestCase):
    def _decoder(self, task, shape, num_classes, model_size=(640, 640), normalized=True, **kwargs):
        layout = resolve_layout(task, shape, num_classes, **kwargs)
        return TensorDecoder(layout, model_size, normalized_coords=normalized)

    def test_detect_box_and_class(self) -> None:
        raw = _channels_first(
            [
                [0.5, 0.5, 0.2, 0.4, 0.1, 0.9, 0.2],  # class 1
                [0.3, 0.3, 0.1, 0.1, 0.7, 0.1, 0.2],  # class 0
                [0.3, 0.3, 0.1, 0.1, 0.1, 0.1, 0.2],  # below threshold
            ]
        )
        dec = self._decoder(Task.DETECT, raw.shape, 3)
        arena = CandidateArena(capacity=1)
        n = dec.decode(raw, 0.25, arena)

        self.assertEqual(n, 2)
        self.assertTrue(np.allclose(arena.boxes[0], [0.4, 0.3, 0.6, 0.7]))
        self.assertTrue(np.allclose(arena.scores[:2], [0.9, 0.7]))
        self.assertTrue(np.array_equal(arena.class_ids[:2], [1, 0]))
        self.assertTrue(np.array_equal(arena.anchors[:2], [0, 1]))
        self.assertGreaterEqual(arena.capacity, 2)

    def test_anchors_first_layout(self) -> None:
        rows = np.array([[0.5, 0.5, 0.2, 0.2, 0.8], [0.2, 0.2, 0.1, 0.1, 0.6]], dtype=np.float32)
        dec = self._decoder(Task.DETECT, (1, 2, 5), 1)
        arena = CandidateArena()
        n = dec.decode(rows[None, ...], 0.5, arena)
        self.assertEqual(n, 2)
        self.assertTrue(np.allclose(arena.boxes[1], [0.15, 0.15, 0.25, 0.25]))

    def test_pixel_coords_normalized_per_axis(self) -> None:
        # Non-square input: x is divided by width, y by height.
        raw = _channels_first([[320.0, 240.0, 64.0, 48.0, 0.9]])
        dec = self._decoder(Task.DETECT, raw.shape, 1, model_size=(640, 480), normalized=False)
        arena = CandidateArena()
        dec.decode(raw, 0.25, arena)
        self.assertTrue(np.allclose(arena.boxes[0], [0.45, 0.45, 0.55, 0.55]))

    def test_degenerate_anchors_dropped(self) -> None:
        raw = _channels_first(
            [
                [np.nan, 0.5, 0.2, 0.2, 0.9],
                [0.5, 0.5, 0.0, 0.2, 0.9],
                [0.5, 0.5, 0.2, -0.1, 0.9],
                [0.5, 0.5, 0.2, 0.2, np.nan],
                [0.5, 0.5, 0.2, 0.2, 1.5],
                [0.5, 0.5, np.inf, 0.2, 0.9],
                [0.5, 0.5, 0.2, 0.2, 0.9],
            ]
        )
        dec = self._decoder(Task.DETECT, raw.shape, 1)
        arena = CandidateArena()
        self.assertEqual(dec.decode(raw, 0.25, arena), 1)
        self.assertEqual(int(arena.anchors[0]), 6)

    def test_all_below_threshold_is_empty(self) -> None:
        raw = _channels_first([[0.5, 0.5, 0.2, 0.2, 0.5]] * 4)
        dec = self._decoder(Task.DETECT, raw.shape, 1)
        arena = CandidateArena()
        self.assertEqual(dec.decode(raw, 0.9, arena), 0)
        self.assertEqual(arena.size, 0)

    def test_shape_change_between_calls_raises(self) -> None:
        raw = _channels_first([[0.5, 0.5, 0.2, 0.2, 0.5]] * 4)
        dec = self._decoder(Task.DETECT, raw.shape, 1)
        with self.assertRaises(TensorShapeError):
            dec.decode(np.zeros((1, 5, 3), dtype=np.float32), 0.25, CandidateArena())

    def test_pose_keypoints(self) -> None:
        kps = []
        for k in range(17):
            kps += [0.01 * k, 0.02 * k, 1.7 if k % 2 else -0.3]
        raw = _channels_first([[0.5, 0.5, 0.4, 0.8, 0.95] + kps])
        dec = self._decoder(Task.POSE, raw.shape, 1)
        arena = CandidateArena(payload_width=dec.layout.payload_width)
        self.assertEqual(dec.decode(raw, 0.25, arena), 1)

        kp = arena.payload[0].reshape(17, 3)
        self.assertAlmostEqual(float(kp[3, 0]), 0.03, places=6)
        self.assertAlmostEqual(float(kp[3, 1]), 0.06, places=6)
        self.assertTrue(((kp[:, 2] >= 0.0) & (kp[:, 2] <= 1.0)).all())

    def test_pose_non_finite_keypoint_drops_anchor(self) -> None:
        good = [0.1] * 51
        bad = list(good)
        bad[10] = np.nan
        raw = _channels_first([[0.5, 0.5, 0.4, 0.8, 0.9] + bad, [0.5, 0.5, 0.4, 0.8, 0.8] + good])
        dec = self._decoder(Task.POSE, raw.shape, 1)
        arena = CandidateArena(payload_width=51)
        self.assertEqual(dec.decode(raw, 0.25, arena), 1)
        self.assertEqual(int(arena.anchors[0]), 1)

    def test_segment_carries_coefficients(self) -> None:
        coeffs = list(np.linspace(-1, 1, 4))
        raw = _channels_first([[0.5, 0.5, 0.2, 0.2, 0.1, 0.8] + coeffs])
        dec = self._decoder(Task.SEGMENT, raw.shape, 2, proto_shape=(1, 8, 8, 4), num_mask_coeffs=4)
        arena = CandidateArena(payload_width=4)
        self.assertEqual(dec.decode(raw, 0.25, arena), 1)
        self.assertTrue(np.allclose(arena.payload[0], coeffs))
        self.assertEqual(int(arena.class_ids[0]), 1)

    def test_obb_hull_and_polygon(self) -> None:
        # 0.4 x 0.2 box rotated by 90 degrees on a square input: hull becomes 0.2 x 0.4.
        raw = _channels_first(
            [
                [0.5, 0.5, 0.4, 0.2, 0.9, np.pi / 2],
                [0.5, 0.5, 0.4, 0.2, 0.9, 0.0],
            ]
        )
        dec = self._decoder(Task.OBB, raw.shape, 1)
        arena = CandidateArena(payload_width=8)
        self.assertEqual(dec.decode(raw, 0.25, arena), 2)
        self.assertTrue(np.allclose(arena.boxes[0], [0.4, 0.3, 0.6, 0.7], atol=1e-6))
        self.assertTrue(np.allclose(arena.boxes[1], [0.3, 0.4, 0.7, 0.6], atol=1e-6))
        poly = arena.payload[1].reshape(4, 2)
        self.assertTrue(np.allclose(poly[0], [0.3, 0.4], atol=1e-6))
        self.assertTrue(np.allclose(poly[2], [0.7, 0.6], atol=1e-6))


class TestRankClasses(unittest.TestCase):
    def test_top_k_with_ties_and_nan(self) -> None:
        scores = np.array([0.1, 0.5, np.nan, 0.5, 0.9, 0.05], dtype=np.float32)
        idx, conf = rank_classes(scores, 3)
        self.assertEqual(idx.tolist(), [4, 1, 3])
        self.assertTrue(np.allclose(conf, [0.9, 0.5, 0.5]))

    def test_fewer_classes_than_k(self) -> None:
        idx, _ = rank_classes(np.array([0.2, 0.8]), 5)
        self.assertEqual(idx.tolist(), [1, 0])


if __name__ == "__main__":
    unittest.main()
