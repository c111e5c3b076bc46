"""
Ground Truth Tables for Traffic Sign Detection
===============================================
Loading, selecting and splitting labeled image data.

A ground truth table has one row per image. The first column is the image
file name, every other column is an object class holding that image's boxes
as [x, y, width, height] in pixels.
"""

import os
import json
import math
import random
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import yaml
import torch
from torch.utils.data import Dataset
from torchvision.transforms import functional as F
from PIL import Image


IMAGE_COLUMN = 'imageFilename'
IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png')


# ============================================================================
# Box Helpers
# ============================================================================

def as_box_array(boxes) -> np.ndarray:
    """Convert a list of boxes to a float (M, 4) array, validating each box."""
    if boxes is None:
        return np.zeros((0, 4), dtype=np.float32)

    arr = np.asarray(boxes, dtype=np.float32)
    if arr.size == 0:
        return np.zeros((0, 4), dtype=np.float32)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape[1] != 4:
        raise ValueError(f"Boxes must be [x, y, width, height], got shape {arr.shape}")
    if np.any(arr[:, 2] <= 0) or np.any(arr[:, 3] <= 0):
        raise ValueError("Box width and height must be positive")
    return arr


def xywh_to_xyxy(boxes: np.ndarray) -> np.ndarray:
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    out = boxes.copy()
    out[:, 2] = boxes[:, 0] + boxes[:, 2]
    out[:, 3] = boxes[:, 1] + boxes[:, 3]
    return out


def xyxy_to_xywh(boxes: np.ndarray) -> np.ndarray:
    boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
    out = boxes.copy()
    out[:, 2] = boxes[:, 2] - boxes[:, 0]
    out[:, 3] = boxes[:, 3] - boxes[:, 1]
    return out


# ============================================================================
# Ground Truth Table
# ============================================================================

class GroundTruthTable:
    """Image file names plus per-class bounding boxes."""

    def __init__(self, image_filenames: Sequence[str], boxes: Dict[str, Sequence]):
        """
        Args:
            image_filenames: One path per row
            boxes: Mapping class name -> list (one entry per row) of boxes.
                Column order follows the mapping's insertion order.
        """
        self.image_filenames = [str(p) for p in image_filenames]
        self.boxes = {}

        for class_name, column in boxes.items():
            if class_name == IMAGE_COLUMN:
                raise ValueError(f"'{IMAGE_COLUMN}' cannot be used as a class name")
            column = list(column)
            if len(column) != len(self.image_filenames):
                raise ValueError(
                    f"Column '{class_name}' has {len(column)} rows, "
                    f"expected {len(self.image_filenames)}"
                )
            self.boxes[class_name] = [as_box_array(b) for b in column]

    @property
    def class_names(self) -> List[str]:
        return list(self.boxes.keys())

    @property
    def height(self) -> int:
        """Number of rows (images)."""
        return len(self.image_filenames)

    @property
    def width(self) -> int:
        """Number of columns, including the image file name column."""
        return 1 + len(self.boxes)

    def __len__(self):
        return self.height

    def __getitem__(self, key):
        if isinstance(key, slice):
            indices = range(*key.indices(self.height))
            return self.take(list(indices))
        raise TypeError("GroundTruthTable supports slicing only; use row() for a single record")

    def row(self, idx: int) -> Dict:
        """Return one row as a record: image path plus each class's boxes."""
        record = {IMAGE_COLUMN: self.image_filenames[idx]}
        for class_name, column in self.boxes.items():
            record[class_name] = column[idx]
        return record

    def take(self, indices: Sequence[int]) -> 'GroundTruthTable':
        """New table holding the given rows, in the given order."""
        return GroundTruthTable(
            [self.image_filenames[i] for i in indices],
            {name: [column[i] for i in indices] for name, column in self.boxes.items()},
        )

    def rows(self, start: int, stop: Optional[int] = None) -> 'GroundTruthTable':
        return self[start:stop]

    def select(self, columns: Sequence[str]) -> 'GroundTruthTable':
        """Keep the image column plus the named class columns."""
        columns = [c for c in columns if c != IMAGE_COLUMN]
        for c in columns:
            if c not in self.boxes:
                raise KeyError(f"Unknown column '{c}'. Available: {self.class_names}")
        return GroundTruthTable(self.image_filenames, {c: self.boxes[c] for c in columns})

    def resolve_paths(self, root) -> 'GroundTruthTable':
        """Prefix relative image paths with a data root directory."""
        root = Path(root)
        resolved = [p if os.path.isabs(p) else str(root / p) for p in self.image_filenames]
        return GroundTruthTable(resolved, self.boxes)

    def num_boxes(self, class_name: str) -> int:
        return int(sum(len(b) for b in self.boxes[class_name]))

    def summary(self, verbose: bool = True) -> Dict:
        """Describe each column, like a table summary."""
        info = {IMAGE_COLUMN: {'rows': self.height}}
        for class_name, column in self.boxes.items():
            info[class_name] = {
                'rows': self.height,
                'boxes': self.num_boxes(class_name),
                'images_with_boxes': int(sum(1 for b in column if len(b) > 0)),
            }

        if verbose:
            print(f"Ground truth: {self.height} rows x {self.width} columns")
            print(f"  {IMAGE_COLUMN}: {self.height} image files")
            for class_name in self.class_names:
                c = info[class_name]
                print(f"  {class_name}: {c['boxes']} boxes in {c['images_with_boxes']} images")
        return info

    def to_records(self) -> List[Dict]:
        records = []
        for i in range(self.height):
            record = {IMAGE_COLUMN: self.image_filenames[i]}
            for class_name, column in self.boxes.items():
                record[class_name] = column[i].tolist()
            records.append(record)
        return records

    @classmethod
    def from_records(cls, records: List[Dict], class_names: Optional[Sequence[str]] = None):
        """Build a table from a list of {imageFilename, <class>: boxes} dicts."""
        if class_names is None:
            class_names = []
            for record in records:
                for key in record:
                    if key != IMAGE_COLUMN and key not in class_names:
                        class_names.append(key)

        image_filenames = []
        for i, record in enumerate(records):
            if IMAGE_COLUMN not in record:
                raise ValueError(f"Record {i} has no '{IMAGE_COLUMN}' field")
            image_filenames.append(record[IMAGE_COLUMN])

        boxes = {name: [record.get(name) for record in records] for name in class_names}
        return cls(image_filenames, boxes)

    @classmethod
    def from_yolo(cls, image_dir, label_dir, class_names: Sequence[str]) -> 'GroundTruthTable':
        """
        Read a YOLO-format image/label directory pair.

        Args:
            image_dir: Directory with images
            label_dir: Directory with one .txt per image (class cx cy w h, normalized)
            class_names: Names for the YOLO class indices

        Returns:
            GroundTruthTable with one column per class name
        """
        image_dir = Path(image_dir)
        label_dir = Path(label_dir)
        if not image_dir.exists():
            raise FileNotFoundError(f"Image directory not found: {image_dir}")

        image_files = sorted(p for p in image_dir.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS)

        image_filenames = []
        boxes = {name: [] for name in class_names}

        for img_path in image_files:
            with Image.open(img_path) as image:
                img_width, img_height = image.size

            per_class = {name: [] for name in class_names}
            label_path = label_dir / (img_path.stem + '.txt')

            if label_path.exists():
                with open(label_path, 'r') as f:
                    for line in f.readlines():
                        parts = line.strip().split()
                        if len(parts) != 5:
                            continue

                        class_id, x_center, y_center, width, height = map(float, parts)
                        class_id = int(class_id)
                        if class_id < 0 or class_id >= len(class_names):
                            continue

                        x_center *= img_width
                        y_center *= img_height
                        width *= img_width
                        height *= img_height

                        x_min = max(0.0, min(x_center - width / 2, img_width))
                        y_min = max(0.0, min(y_center - height / 2, img_height))
                        x_max = max(0.0, min(x_center + width / 2, img_width))
                        y_max = max(0.0, min(y_center + height / 2, img_height))

                        # Degenerate after clipping
                        if x_max <= x_min or y_max <= y_min:
                            continue

                        per_class[class_names[class_id]].append(
                            [x_min, y_min, x_max - x_min, y_max - y_min]
                        )

            image_filenames.append(str(img_path))
            for name in class_names:
                boxes[name].append(per_class[name])

        return cls(image_filenames, boxes)


# ============================================================================
# Loading and Saving
# ============================================================================

def load_ground_truth(path, data_root=None) -> GroundTruthTable:
    """
    Load a ground truth table from a JSON or YAML file.

    The file holds a list of records, or a mapping with a 'records' list and
    an optional 'classes' list fixing the column order.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Ground truth file not found: {path}")

    with open(path, 'r') as f:
        if path.suffix.lower() in ('.yaml', '.yml'):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    class_names = None
    if isinstance(data, dict):
        class_names = data.get('classes')
        data = data.get('records', [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of records in {path}")

    table = GroundTruthTable.from_records(data, class_names)
    if data_root is not None:
        table = table.resolve_paths(data_root)
    return table


def save_ground_truth(table: GroundTruthTable, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump({'classes': table.class_names, 'records': table.to_records()}, f, indent=2)


# ============================================================================
# Train / Test Split
# ============================================================================

def split_ground_truth(table: GroundTruthTable, train_fraction: float = 0.8,
                       shuffle: bool = False, seed: int = 0) -> Tuple[GroundTruthTable, GroundTruthTable]:
    """
    Split rows into a training and a test table.

    The training table gets floor(train_fraction * N) rows and the test table
    the rest. Every row lands in exactly one of them.
    """
    if not 0.0 <= train_fraction <= 1.0:
        raise ValueError(f"train_fraction must be in [0, 1], got {train_fraction}")

    indices = list(range(table.height))
    if shuffle:
        random.Random(seed).shuffle(indices)

    idx = int(math.floor(train_fraction * table.height))
    return table.take(indices[:idx]), table.take(indices[idx:])


# ============================================================================
# PyTorch Dataset
# ============================================================================

class DetectionDataset(Dataset):
    """
    Serves ground truth rows as (image, target) pairs for torchvision detectors.

    Class columns map to model label indices 1..K; 0 is background.
    """

    def __init__(self, table: GroundTruthTable, transforms=None):
        self.table = table
        self.transforms = transforms
        self.class_to_idx = {name: i + 1 for i, name in enumerate(table.class_names)}

    def __len__(self):
        return len(self.table)

    def target_for(self, idx: int) -> Dict:
        boxes = []
        labels = []
        for class_name, column in self.table.boxes.items():
            for box in xywh_to_xyxy(column[idx]):
                boxes.append(box.tolist())
                labels.append(self.class_to_idx[class_name])

        if len(boxes) == 0:
            boxes = torch.zeros((0, 4), dtype=torch.float32)
            labels = torch.zeros((0,), dtype=torch.int64)
        else:
            boxes = torch.as_tensor(boxes, dtype=torch.float32)
            labels = torch.as_tensor(labels, dtype=torch.int64)

        target = {}
        target['boxes'] = boxes
        target['labels'] = labels
        target['image_id'] = torch.tensor([idx])
        target['area'] = (boxes[:, 3] - boxes[:, 1]) * (boxes[:, 2] - boxes[:, 0])
        target['iscrowd'] = torch.zeros((len(boxes),), dtype=torch.int64)
        return target

    def __getitem__(self, idx: int):
        img_path = self.table.image_filenames[idx]
        if not os.path.exists(img_path):
            raise FileNotFoundError(f"Image not found: {img_path}")

        image = Image.open(img_path).convert('RGB')
        target = self.target_for(idx)

        if self.transforms:
            image, target = self.transforms(image, target)
        else:
            image = F.to_tensor(image)

        return image, target


def collate_fn(batch):
    """Custom collate function for DataLoader."""
    return tuple(zip(*batch))
