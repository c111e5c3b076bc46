"""
Detection Metrics
=================
Average precision and log-average miss rate for detector results.

Results are a list with one record per test image:
    {'Boxes': (N, 4) [x, y, w, h], 'Scores': (N,), 'Labels': N class names}
and the expected boxes come from a GroundTruthTable with the same rows.
"""

from typing import Dict, List, Sequence, Tuple

import numpy as np

from ground_truth import GroundTruthTable, xywh_to_xyxy


def box_iou_matrix(boxes1: np.ndarray, boxes2: np.ndarray) -> np.ndarray:
    """Pairwise IoU of two xyxy box arrays, shape (len(boxes1), len(boxes2))."""
    boxes1 = np.asarray(boxes1, dtype=np.float64).reshape(-1, 4)
    boxes2 = np.asarray(boxes2, dtype=np.float64).reshape(-1, 4)

    area1 = (boxes1[:, 2] - boxes1[:, 0]) * (boxes1[:, 3] - boxes1[:, 1])
    area2 = (boxes2[:, 2] - boxes2[:, 0]) * (boxes2[:, 3] - boxes2[:, 1])

    lt = np.maximum(boxes1[:, None, :2], boxes2[None, :, :2])
    rb = np.minimum(boxes1[:, None, 2:], boxes2[None, :, 2:])
    wh = np.clip(rb - lt, 0, None)
    inter = wh[..., 0] * wh[..., 1]
    union = area1[:, None] + area2[None, :] - inter

    return np.where(union > 0, inter / np.maximum(union, 1e-12), 0.0)


def compute_iou(box1, box2) -> float:
    """IoU between two [x_min, y_min, x_max, y_max] boxes."""
    return float(box_iou_matrix(box1, box2)[0, 0])


# ============================================================================
# Matching
# ============================================================================

def _label_names(labels, class_names: Sequence[str]) -> List[str]:
    """Accept class names or 1-based label indices."""
    names = []
    for label in labels:
        if isinstance(label, str):
            names.append(label)
        else:
            names.append(class_names[int(label) - 1])
    return names


def _check_inputs(results: Sequence[Dict], expected: GroundTruthTable):
    if len(results) != len(expected):
        raise ValueError(
            f"Results have {len(results)} rows but expected data has {len(expected)}"
        )


def match_detections(results: Sequence[Dict], expected: GroundTruthTable,
                     class_name: str, threshold: float = 0.5) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Label each detection of one class as true or false positive.

    Detections are matched per image in descending score order to the
    unmatched ground truth box with the highest IoU; a match needs
    IoU >= threshold.

    Returns:
        (scores, is_tp, num_ground_truths) with scores sorted descending
    """
    detections = []  # list of (score, is_tp)
    num_gts = 0

    for result, gt_boxes in zip(results, expected.boxes[class_name]):
        gt_xyxy = xywh_to_xyxy(gt_boxes)
        num_gts += len(gt_xyxy)

        boxes = np.asarray(result.get('Boxes', []), dtype=np.float32).reshape(-1, 4)
        scores = np.asarray(result.get('Scores', []), dtype=np.float32).reshape(-1)
        labels = _label_names(result.get('Labels', []), expected.class_names)

        mask = np.array([l == class_name for l in labels], dtype=bool)
        if not mask.any():
            continue

        boxes = xywh_to_xyxy(boxes[mask])
        scores = scores[mask]
        order = np.argsort(-scores, kind='stable')
        ious = box_iou_matrix(boxes[order], gt_xyxy)

        matched_gt = set()
        for row, score in zip(ious, scores[order]):
            best_iou = 0.0
            best_gt_idx = -1

            for gt_idx, iou in enumerate(row):
                if gt_idx in matched_gt:
                    continue
                if iou > best_iou:
                    best_iou = iou
                    best_gt_idx = gt_idx

            is_tp = best_iou >= threshold and best_gt_idx != -1
            if is_tp:
                matched_gt.add(best_gt_idx)
            detections.append((float(score), is_tp))

    detections.sort(key=lambda x: x[0], reverse=True)
    scores = np.array([d[0] for d in detections], dtype=np.float64)
    is_tp = np.array([d[1] for d in detections], dtype=bool)
    return scores, is_tp, num_gts


# ============================================================================
# Average Precision
# ============================================================================

def average_precision(recall: np.ndarray, precision: np.ndarray) -> float:
    """Area under the monotone precision envelope."""
    prec_curve = np.concatenate(([0.0], precision, [0.0]))
    rec_curve = np.concatenate(([0.0], recall, [1.0]))

    for i in range(len(prec_curve) - 2, -1, -1):
        prec_curve[i] = max(prec_curve[i], prec_curve[i + 1])

    indices = np.where(rec_curve[1:] != rec_curve[:-1])[0]
    return float(np.sum((rec_curve[indices + 1] - rec_curve[indices]) * prec_curve[indices + 1]))


def _precision_for_class(results, expected, class_name, threshold):
    _, is_tp, num_gts = match_detections(results, expected, class_name, threshold)

    if len(is_tp) == 0 or num_gts == 0:
        recall = np.zeros(len(is_tp) + 1)
        cum_tps = np.cumsum(is_tp.astype(np.float64))
        precision = np.concatenate(([1.0], cum_tps / np.arange(1, len(is_tp) + 1)))
        return 0.0, recall, precision

    cum_tps = np.cumsum(is_tp.astype(np.float64))
    cum_fps = np.cumsum((~is_tp).astype(np.float64))

    precision = cum_tps / (cum_tps + cum_fps)
    recall = cum_tps / num_gts

    ap = average_precision(recall, precision)

    # Curves start at recall 0 / precision 1
    recall = np.concatenate(([0.0], recall))
    precision = np.concatenate(([1.0], precision))
    return ap, recall, precision


def evaluate_detection_precision(results: Sequence[Dict], expected: GroundTruthTable,
                                 threshold: float = 0.5):
    """
    Evaluate average precision of detector results.

    Args:
        results: One detection record per test image
        expected: Ground truth table with the same rows
        threshold: IoU needed for a detection to count as a true positive

    Returns:
        (ap, recall, precision). With one class these are a float and two
        1-D arrays; with several classes, lists ordered like the table columns.
    """
    _check_inputs(results, expected)

    aps, recalls, precisions = [], [], []
    for class_name in expected.class_names:
        ap, recall, precision = _precision_for_class(results, expected, class_name, threshold)
        aps.append(ap)
        recalls.append(recall)
        precisions.append(precision)

    if len(expected.class_names) == 1:
        return aps[0], recalls[0], precisions[0]
    return aps, recalls, precisions


# ============================================================================
# Miss Rate
# ============================================================================

FPPI_REFERENCE = np.logspace(-2, 0, 9)


def log_average_miss_rate(fppi: np.ndarray, miss_rate: np.ndarray) -> float:
    """Geometric mean of the miss rate sampled at nine FPPI points in [1e-2, 1]."""
    samples = []
    for ref in FPPI_REFERENCE:
        idx = np.where(fppi <= ref)[0]
        samples.append(miss_rate[idx[-1]] if len(idx) > 0 else miss_rate[0])
    samples = np.maximum(np.asarray(samples, dtype=np.float64), 1e-10)
    return float(np.exp(np.mean(np.log(samples))))


def _miss_rate_for_class(results, expected, class_name, threshold):
    _, is_tp, num_gts = match_detections(results, expected, class_name, threshold)
    num_images = max(len(expected), 1)

    cum_tps = np.cumsum(is_tp.astype(np.float64))
    cum_fps = np.cumsum((~is_tp).astype(np.float64))

    fppi = np.concatenate(([0.0], cum_fps / num_images))
    if num_gts == 0:
        miss_rate = np.ones(len(fppi))
    else:
        miss_rate = np.concatenate(([1.0], 1.0 - cum_tps / num_gts))

    return log_average_miss_rate(fppi, miss_rate), fppi, miss_rate


def evaluate_detection_miss_rate(results: Sequence[Dict], expected: GroundTruthTable,
                                 threshold: float = 0.5):
    """
    Evaluate the log-average miss rate of detector results.

    Returns:
        (log_average_miss_rate, fppi, miss_rate), shaped like the return of
        evaluate_detection_precision
    """
    _check_inputs(results, expected)

    lamrs, fppis, miss_rates = [], [], []
    for class_name in expected.class_names:
        lamr, fppi, miss_rate = _miss_rate_for_class(results, expected, class_name, threshold)
        lamrs.append(lamr)
        fppis.append(fppi)
        miss_rates.append(miss_rate)

    if len(expected.class_names) == 1:
        return lamrs[0], fppis[0], miss_rates[0]
    return lamrs, fppis, miss_rates
