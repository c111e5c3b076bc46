"""
Traffic Sign Detection using Faster R-CNN
==========================================
Train a Faster R-CNN detector for stop signs and cars from a small labeled
data set, using torchvision's detection toolkit for the region proposal
network, anchor regression, NMS and ROI heads.

The network is described as a layer stack (see layers.py) and trained in four
alternating stages, each with its own training options:
    1. region proposal network
    2. detection network
    3. region proposal network, shared convolution layers frozen
    4. detection network, shared convolution layers frozen
"""

import os
import json
import random
import argparse
import tempfile
from pathlib import Path
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import yaml
import numpy as np
import torch
import torch.optim as optim
from torch.utils.data import DataLoader
from torchvision.models.detection import FasterRCNN
from torchvision.models.detection.faster_rcnn import FastRCNNPredictor
from torchvision.models.detection.rpn import AnchorGenerator
from torchvision.ops import MultiScaleRoIAlign
from torchvision.transforms import functional as F
from PIL import Image
import matplotlib.pyplot as plt
import matplotlib.patches as patches
from tqdm import tqdm

from ground_truth import (
    GroundTruthTable, DetectionDataset, collate_fn, load_ground_truth,
    split_ground_truth, xyxy_to_xywh,
)
from layers import (
    Layer, default_layers, validate_layers, build_backbone, build_box_head,
    feature_map_size, num_output_classes, input_layer, layers_to_dicts,
    layers_from_dicts,
)
from detection_metrics import evaluate_detection_precision, evaluate_detection_miss_rate


# ============================================================================
# Training Options
# ============================================================================

SOLVERS = ('sgdm', 'adam', 'rmsprop')


class TrainingOptions:
    """Hyperparameters for one training stage."""

    def __init__(self, solver_name: str = 'sgdm', max_epochs: int = 10,
                 initial_learn_rate: float = 0.01, checkpoint_path: str = '',
                 momentum: float = 0.9, l2_regularization: float = 1e-4,
                 mini_batch_size: int = 128, learn_rate_schedule: str = 'none',
                 learn_rate_drop_factor: float = 0.1, learn_rate_drop_period: int = 10,
                 gradient_threshold: float = float('inf'),
                 gradient_decay_factor: float = 0.9,
                 squared_gradient_decay_factor: Optional[float] = None,
                 epsilon: float = 1e-8, shuffle: str = 'once',
                 verbose: bool = True, verbose_frequency: int = 50,
                 execution_environment: str = 'auto'):
        if solver_name not in SOLVERS:
            raise ValueError(f"Unknown solver '{solver_name}'. Must be one of {SOLVERS}")
        if int(max_epochs) <= 0:
            raise ValueError(f"max_epochs must be positive, got {max_epochs}")
        if float(initial_learn_rate) <= 0:
            raise ValueError(f"initial_learn_rate must be positive, got {initial_learn_rate}")
        if int(mini_batch_size) <= 0:
            raise ValueError(f"mini_batch_size must be positive, got {mini_batch_size}")
        if learn_rate_schedule not in ('none', 'piecewise'):
            raise ValueError(f"Unknown learn_rate_schedule '{learn_rate_schedule}'")
        if not 0 <= float(learn_rate_drop_factor) <= 1:
            raise ValueError("learn_rate_drop_factor must be in [0, 1]")
        if int(learn_rate_drop_period) <= 0:
            raise ValueError("learn_rate_drop_period must be positive")
        if not 0 <= float(momentum) <= 1:
            raise ValueError("momentum must be in [0, 1]")
        if float(l2_regularization) < 0:
            raise ValueError("l2_regularization must be non-negative")
        if float(gradient_threshold) <= 0:
            raise ValueError("gradient_threshold must be positive")
        if shuffle not in ('once', 'never', 'every-epoch'):
            raise ValueError(f"Unknown shuffle option '{shuffle}'")
        if int(verbose_frequency) <= 0:
            raise ValueError(f"verbose_frequency must be positive, got {verbose_frequency}")
        if execution_environment not in ('auto', 'cpu', 'gpu'):
            raise ValueError(f"Unknown execution_environment '{execution_environment}'")

        if squared_gradient_decay_factor is None:
            squared_gradient_decay_factor = 0.999 if solver_name == 'adam' else 0.9

        self.solver_name = solver_name
        self.max_epochs = int(max_epochs)
        self.initial_learn_rate = float(initial_learn_rate)
        self.checkpoint_path = str(checkpoint_path) if checkpoint_path else ''
        self.momentum = float(momentum)
        self.l2_regularization = float(l2_regularization)
        self.mini_batch_size = int(mini_batch_size)
        self.learn_rate_schedule = learn_rate_schedule
        self.learn_rate_drop_factor = float(learn_rate_drop_factor)
        self.learn_rate_drop_period = int(learn_rate_drop_period)
        self.gradient_threshold = float(gradient_threshold)
        self.gradient_decay_factor = float(gradient_decay_factor)
        self.squared_gradient_decay_factor = float(squared_gradient_decay_factor)
        self.epsilon = float(epsilon)
        self.shuffle = shuffle
        self.verbose = bool(verbose)
        self.verbose_frequency = int(verbose_frequency)
        self.execution_environment = execution_environment

    def to_dict(self) -> Dict:
        return dict(self.__dict__)

    def __repr__(self):
        return f"TrainingOptions({self.solver_name!r}, max_epochs={self.max_epochs}, " \
               f"initial_learn_rate={self.initial_learn_rate}, checkpoint_path={self.checkpoint_path!r})"


def training_options(solver_name: str, **kwargs) -> TrainingOptions:
    """Create training options for the named solver ('sgdm', 'adam' or 'rmsprop')."""
    return TrainingOptions(solver_name, **kwargs)


def stage_options(checkpoint_path: Optional[str] = None, max_epochs: int = 10,
                  learn_rates=(1e-5, 1e-5, 1e-6, 1e-6), solver_name: str = 'sgdm') -> List[TrainingOptions]:
    """
    Default options for the four training stages.

    The last two stages are fine-tuning steps, so their learning rate is lower.
    Checkpoints go to the temp directory unless another path is given.
    """
    if checkpoint_path is None:
        checkpoint_path = tempfile.gettempdir()
    return [
        training_options(solver_name, max_epochs=max_epochs,
                         initial_learn_rate=lr, checkpoint_path=checkpoint_path)
        for lr in learn_rates
    ]


# ============================================================================
# Configuration Management
# ============================================================================

class Config:
    """Configuration class for managing all hyperparameters and settings."""

    CLASS_DESCRIPTIONS = {
        'stopSign': "Stop signs",
        'carRear': "Rear view of cars",
        'carFront': "Front view of cars",
    }

    def __init__(self, classes: Optional[Sequence[str]] = None):
        """
        Initialize configuration.

        Args:
            classes: Ground truth columns to train on. Default: ['stopSign']
        """
        # Data
        self.ground_truth_path = "data/stopSignsAndCars.json"
        self.data_root = "data"
        self.classes = list(classes) if classes else ['stopSign']
        self.train_fraction = 0.8
        self.shuffle_split = False

        # Network, see layers.default_layers
        self.input_size = [32, 32, 3]
        self.filter_size = [3, 3]
        self.num_filters = 32
        self.hidden_size = 64
        self.weight_init_std = 0.0001

        # Region sampling
        self.positive_overlap_range = [0.6, 1.0]
        self.negative_overlap_range = [0.0, 0.3]
        self.box_pyramid_scale = 1.2
        self.num_box_pyramid_levels = 10
        self.aspect_ratios = [0.5, 1.0, 2.0]
        self.num_strongest_regions = 2000
        self.min_size = 600
        self.max_size = 1000

        # Training settings
        self.seed = 0
        self.batch_size = 1
        self.num_workers = 2
        self.execution_environment = 'auto'
        self.stage_options = stage_options()

        # Inference settings
        self.conf_threshold = 0.5   # Detection threshold for detect()
        self.eval_threshold = 0.0   # Keep low-score detections for PR curves
        self.nms_threshold = 0.5
        self.overlap_threshold = 0.5  # IoU for a true positive

        # Paths
        self.checkpoint_dir = "checkpoints"
        self.output_dir = "outputs"
        self.results_dir = "results"

        self.model_name = "faster_rcnn"

        self.validate()

    def validate(self):
        """Check the overlap ranges and split fraction."""
        pos = [float(v) for v in self.positive_overlap_range]
        neg = [float(v) for v in self.negative_overlap_range]
        if len(pos) != 2 or len(neg) != 2:
            raise ValueError("Overlap ranges must be [low, high] pairs")
        for lo, hi in (pos, neg):
            if not 0.0 <= lo < hi <= 1.0:
                raise ValueError(f"Invalid overlap range [{lo}, {hi}]")
        if pos[1] != 1.0:
            raise ValueError("PositiveOverlapRange must end at 1")
        if neg[0] != 0.0:
            raise ValueError("NegativeOverlapRange must start at 0")
        if neg[1] > pos[0]:
            raise ValueError("NegativeOverlapRange must not overlap PositiveOverlapRange")
        if not 0.0 <= self.train_fraction <= 1.0:
            raise ValueError(f"train_fraction must be in [0, 1], got {self.train_fraction}")
        if self.box_pyramid_scale <= 1.0:
            raise ValueError("box_pyramid_scale must be greater than 1")
        if len(self.stage_options) != 4:
            raise ValueError(f"Expected 4 stage options, got {len(self.stage_options)}")
        if self.execution_environment not in ('auto', 'cpu', 'gpu'):
            raise ValueError(f"Unknown execution_environment '{self.execution_environment}'")

    @property
    def device(self) -> torch.device:
        return resolve_device(self.execution_environment)

    @property
    def num_classes(self) -> int:
        return len(self.classes) + 1  # +1 for background

    def make_dirs(self):
        os.makedirs(self.checkpoint_dir, exist_ok=True)
        os.makedirs(self.output_dir, exist_ok=True)
        os.makedirs(self.results_dir, exist_ok=True)

    def build_layers(self) -> List[Layer]:
        return default_layers(
            self.num_classes,
            input_size=self.input_size,
            filter_size=self.filter_size,
            num_filters=self.num_filters,
            hidden_size=self.hidden_size,
            weight_init_std=self.weight_init_std,
        )

    def update(self, values: Dict):
        """Set attributes from a mapping, rejecting unknown keys."""
        for key, value in values.items():
            if key == 'stage_options':
                if value and isinstance(value[0], dict):
                    value = [training_options(**v) for v in value]
            elif not hasattr(self, key):
                raise ValueError(f"Unknown configuration key '{key}'")
            setattr(self, key, value)
        if 'execution_environment' in values:
            self.set_stage_options(execution_environment=self.execution_environment)
        self.validate()
        return self

    def set_stage_options(self, **changes):
        """Apply the same overrides to every stage, re-validating each record."""
        self.stage_options = [
            training_options(**dict(options.to_dict(), **changes))
            for options in self.stage_options
        ]

    def update_from_args(self, args: argparse.Namespace):
        """Update configuration from command line arguments."""
        if args.ground_truth:
            self.ground_truth_path = args.ground_truth
        if args.data_root:
            self.data_root = args.data_root
        if args.classes:
            self.classes = [c.strip() for c in args.classes.split(',') if c.strip()]
        if args.train_fraction is not None:
            self.train_fraction = args.train_fraction
        if args.epochs is not None:
            self.set_stage_options(max_epochs=args.epochs)
        if args.conf_threshold is not None:
            self.conf_threshold = args.conf_threshold
        if args.checkpoint_dir:
            self.checkpoint_dir = args.checkpoint_dir
            self.set_stage_options(checkpoint_path=args.checkpoint_dir)
        if args.output_dir:
            self.output_dir = args.output_dir
        if args.seed is not None:
            self.seed = args.seed
        if args.device:
            self.execution_environment = args.device
            self.set_stage_options(execution_environment=args.device)
        self.validate()

    @classmethod
    def from_yaml(cls, path) -> 'Config':
        """Load a configuration file; keys override the defaults."""
        with open(path, 'r') as f:
            values = yaml.safe_load(f) or {}
        config = cls(values.pop('classes', None))
        return config.update(values)

    def to_dict(self) -> Dict:
        values = dict(self.__dict__)
        values['stage_options'] = [o.to_dict() for o in self.stage_options]
        return json.loads(json.dumps(values))

    @classmethod
    def from_dict(cls, values: Dict) -> 'Config':
        values = dict(values)
        config = cls(values.pop('classes', None))
        return config.update({k: v for k, v in values.items() if hasattr(config, k)})

    def __str__(self):
        """String representation of configuration."""
        return json.dumps(self.to_dict(), indent=2)


def resolve_device(execution_environment: str = 'auto') -> torch.device:
    if execution_environment == 'cpu':
        return torch.device('cpu')
    if execution_environment == 'gpu':
        if not torch.cuda.is_available():
            raise RuntimeError("execution_environment='gpu' but CUDA is not available")
        return torch.device('cuda')
    return torch.device('cuda' if torch.cuda.is_available() else 'cpu')


def seed_everything(seed: int = 0):
    """Seed Python, NumPy and PyTorch for reproducible training."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ============================================================================
# Model Definition
# ============================================================================

def anchor_sizes(layers: Sequence[Layer], config: Config) -> tuple:
    """Anchor sizes start at the network input size and grow by box_pyramid_scale."""
    base = float(min(input_layer(layers).size[:2]))
    return tuple(base * config.box_pyramid_scale ** k for k in range(config.num_box_pyramid_levels))


def compute_channel_mean(table: GroundTruthTable) -> List[float]:
    """Per-channel mean of the images in [0, 1], used for zero-centering."""
    total = np.zeros(3, dtype=np.float64)
    count = 0
    for img_path in tqdm(table.image_filenames, desc="Computing image mean", leave=False):
        with Image.open(img_path) as image:
            pixels = np.asarray(image.convert('RGB'), dtype=np.float64) / 255.0
        total += pixels.reshape(-1, 3).sum(axis=0)
        count += pixels.shape[0] * pixels.shape[1]
    if count == 0:
        return [0.0, 0.0, 0.0]
    return [float(v) for v in total / count]


def build_faster_rcnn(layers: Sequence[Layer], config: Config,
                      image_mean: Optional[Sequence[float]] = None) -> FasterRCNN:
    """
    Create a Faster R-CNN model from a layer stack.

    Args:
        layers: Layer specifications, see layers.default_layers
        config: Config with overlap ranges, anchor and image size settings
        image_mean: Per-channel mean subtracted when the input layer zero-centers

    Returns:
        model: torchvision FasterRCNN
    """
    validate_layers(layers)

    backbone = build_backbone(layers)
    box_head, representation_size = build_box_head(layers)
    box_predictor = FastRCNNPredictor(representation_size, num_output_classes(layers))

    anchor_generator = AnchorGenerator(
        sizes=(anchor_sizes(layers, config),),
        aspect_ratios=(tuple(config.aspect_ratios),)
    )

    roi_pooler = MultiScaleRoIAlign(
        featmap_names=['0'],
        output_size=feature_map_size(layers),
        sampling_ratio=2
    )

    if input_layer(layers).normalization == 'zerocenter' and image_mean is not None:
        mean = [float(v) for v in image_mean]
    else:
        mean = [0.0, 0.0, 0.0]

    positive_low = float(config.positive_overlap_range[0])
    negative_high = float(config.negative_overlap_range[1])

    model = FasterRCNN(
        backbone=backbone,
        num_classes=None,
        min_size=config.min_size,
        max_size=config.max_size,
        image_mean=mean,
        image_std=[1.0, 1.0, 1.0],
        rpn_anchor_generator=anchor_generator,
        rpn_pre_nms_top_n_train=config.num_strongest_regions,
        rpn_post_nms_top_n_train=config.num_strongest_regions,
        rpn_fg_iou_thresh=positive_low,
        rpn_bg_iou_thresh=negative_high,
        box_roi_pool=roi_pooler,
        box_head=box_head,
        box_predictor=box_predictor,
        box_nms_thresh=config.nms_threshold,
        box_fg_iou_thresh=positive_low,
        box_bg_iou_thresh=negative_high,
    )
    return model


# ============================================================================
# Detector
# ============================================================================

def to_image_tensor(image) -> torch.Tensor:
    """Accept a path, PIL image, HxWx3 array or CxHxW tensor."""
    if isinstance(image, (str, Path)):
        if not os.path.exists(image):
            raise FileNotFoundError(f"Image not found: {image}")
        image = Image.open(image).convert('RGB')
    if isinstance(image, torch.Tensor):
        return image.float()
    if isinstance(image, np.ndarray):
        image = Image.fromarray(image.astype(np.uint8)).convert('RGB')
    return F.to_tensor(image)


class FasterRCNNDetector:
    """Trained detector: a Faster R-CNN model plus its class names and layer stack."""

    def __init__(self, model: FasterRCNN, class_names: Sequence[str], layers: Sequence[Layer],
                 config: Optional[Config] = None, image_mean: Optional[Sequence[float]] = None):
        self.model = model
        self.class_names = list(class_names)
        self.layers = list(layers)
        self.config = config if config is not None else Config(self.class_names)
        self.image_mean = [float(v) for v in image_mean] if image_mean is not None else None
        self.device = next(model.parameters()).device

    def to(self, device):
        self.model.to(device)
        self.device = torch.device(device)
        return self

    @torch.no_grad()
    def detect(self, image, threshold: Optional[float] = None):
        """
        Detect objects in one image.

        Args:
            image: Path, PIL image, HxWx3 uint8 array or CxHxW float tensor
            threshold: Minimum score (default: config.conf_threshold)

        Returns:
            boxes: (N, 4) [x, y, width, height]
            scores: (N,)
            labels: list of N class names
        """
        if threshold is None:
            threshold = self.config.conf_threshold

        self.model.eval()
        image_tensor = to_image_tensor(image).to(self.device)
        predictions = self.model([image_tensor])[0]

        scores = predictions['scores'].cpu().numpy()
        keep = np.where(scores >= threshold)[0]
        keep = keep[np.argsort(-scores[keep], kind='stable')]

        boxes = xyxy_to_xywh(predictions['boxes'].cpu().numpy()[keep])
        labels = [self.class_names[int(l) - 1] for l in predictions['labels'].cpu().numpy()[keep]]
        return boxes, scores[keep], labels

    def save(self, path):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        torch.save({
            'model_state_dict': self.model.state_dict(),
            'class_names': self.class_names,
            'layers': layers_to_dicts(self.layers),
            'image_mean': self.image_mean,
            'config': self.config.to_dict(),
        }, path)

    @classmethod
    def load(cls, path, device=None) -> 'FasterRCNNDetector':
        """Load a detector saved with save() or a training checkpoint."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Checkpoint not found: {path}")
        if device is None:
            device = resolve_device('auto')

        checkpoint = torch.load(path, map_location=device)
        config = Config.from_dict(checkpoint['config'])
        layers = layers_from_dicts(checkpoint['layers'])

        model = build_faster_rcnn(layers, config, image_mean=checkpoint.get('image_mean'))
        model.load_state_dict(checkpoint['model_state_dict'])
        model.to(device)
        model.eval()

        return cls(model, checkpoint['class_names'], layers, config, checkpoint.get('image_mean'))


def run_detector(detector: FasterRCNNDetector, table: GroundTruthTable,
                 threshold: Optional[float] = None) -> List[Dict]:
    """Run the detector on every image of a table and collect the results."""
    results = []
    for img_path in tqdm(table.image_filenames, desc="Detecting"):
        boxes, scores, labels = detector.detect(img_path, threshold=threshold)
        results.append({'Boxes': boxes, 'Scores': scores, 'Labels': labels})
    return results


def save_detection_results(results: List[Dict], path):
    records = [
        {'Boxes': np.asarray(r['Boxes']).tolist(),
         'Scores': np.asarray(r['Scores']).tolist(),
         'Labels': list(r['Labels'])}
        for r in results
    ]
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(records, f, indent=2)


def load_detection_results(path) -> List[Dict]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Results file not found: {path}")
    with open(path, 'r') as f:
        records = json.load(f)
    return [
        {'Boxes': np.asarray(r['Boxes'], dtype=np.float32).reshape(-1, 4),
         'Scores': np.asarray(r['Scores'], dtype=np.float32),
         'Labels': list(r['Labels'])}
        for r in records
    ]


# ============================================================================
# Training Functions
# ============================================================================

RPN_LOSSES = ('loss_objectness', 'loss_rpn_box_reg')
DETECTOR_LOSSES = ('loss_classifier', 'loss_box_reg')

# (stage, description, trainable submodules, optimized losses)
TRAINING_STAGES = (
    (1, "Region proposal network", ('backbone', 'rpn'), RPN_LOSSES),
    (2, "Detection network", ('backbone', 'roi_heads'), DETECTOR_LOSSES),
    (3, "Region proposal network, shared layers frozen", ('rpn',), RPN_LOSSES),
    (4, "Detection network, shared layers frozen", ('roi_heads',), DETECTOR_LOSSES),
)

HISTORY_META_KEYS = ('total_loss', 'stage', 'epoch', 'lr', 'skipped_batches', 'successful_batches')


def set_trainable(model: FasterRCNN, parts: Sequence[str]):
    """Enable gradients only for parameters of the named top-level submodules."""
    for name, param in model.named_parameters():
        param.requires_grad = name.split('.')[0] in parts


def configure_stage(model: FasterRCNN, stage: int, options: TrainingOptions):
    """Set trainable parameters and region sampling for a stage."""
    _, _, parts, losses = TRAINING_STAGES[stage - 1]
    set_trainable(model, parts)
    if losses == RPN_LOSSES:
        model.rpn.fg_bg_sampler.batch_size_per_image = options.mini_batch_size
    else:
        model.roi_heads.fg_bg_sampler.batch_size_per_image = options.mini_batch_size
    return losses


def make_optimizer(params, options: TrainingOptions):
    if options.solver_name == 'sgdm':
        return optim.SGD(
            params,
            lr=options.initial_learn_rate,
            momentum=options.momentum,
            weight_decay=options.l2_regularization
        )
    if options.solver_name == 'adam':
        return optim.Adam(
            params,
            lr=options.initial_learn_rate,
            betas=(options.gradient_decay_factor, options.squared_gradient_decay_factor),
            eps=options.epsilon,
            weight_decay=options.l2_regularization
        )
    return optim.RMSprop(
        params,
        lr=options.initial_learn_rate,
        alpha=options.squared_gradient_decay_factor,
        eps=options.epsilon,
        weight_decay=options.l2_regularization
    )


def make_lr_scheduler(optimizer, options: TrainingOptions):
    if options.learn_rate_schedule == 'piecewise':
        return optim.lr_scheduler.StepLR(
            optimizer,
            step_size=options.learn_rate_drop_period,
            gamma=options.learn_rate_drop_factor
        )
    # Constant learning rate
    return optim.lr_scheduler.StepLR(optimizer, step_size=options.max_epochs + 1, gamma=1.0)


def make_data_loader(dataset: DetectionDataset, options: TrainingOptions, config: Config):
    if options.shuffle == 'every-epoch':
        sampler = None
        shuffle = True
    elif options.shuffle == 'once':
        sampler = torch.randperm(len(dataset)).tolist()
        shuffle = False
    else:
        sampler = None
        shuffle = False

    return DataLoader(
        dataset,
        batch_size=config.batch_size,
        shuffle=shuffle,
        sampler=sampler,
        num_workers=config.num_workers,
        collate_fn=collate_fn,
        pin_memory=torch.cuda.is_available()
    )


def train_one_epoch(model, optimizer, data_loader, device, stage, epoch,
                    loss_keys: Sequence[str], options: TrainingOptions):
    """Train for one epoch, optimizing only the losses of the current stage."""
    model.train()

    running_loss = 0.0
    running_losses = {}  # All loss components, optimized or not

    skipped_batches = 0
    successful_batches = 0

    trainable = [p for p in model.parameters() if p.requires_grad]
    pbar = tqdm(data_loader, desc=f"Stage {stage} Epoch {epoch}", disable=not options.verbose)

    for images, targets in pbar:
        images = list(image.to(device) for image in images)
        targets = [{k: v.to(device) for k, v in t.items()} for t in targets]

        # Images without boxes for the selected classes are not used
        valid_indices = [idx for idx, t in enumerate(targets) if len(t['boxes']) > 0]

        if len(valid_indices) == 0:
            skipped_batches += 1
            continue

        images = [images[idx] for idx in valid_indices]
        targets = [targets[idx] for idx in valid_indices]

        # Forward pass
        loss_dict = model(images, targets)
        losses = sum(loss_dict[k] for k in loss_keys)

        # Backward pass
        optimizer.zero_grad()
        losses.backward()
        if options.gradient_threshold != float('inf'):
            torch.nn.utils.clip_grad_norm_(trainable, options.gradient_threshold)
        optimizer.step()

        running_loss += losses.item()
        for k, v in loss_dict.items():
            if k not in running_losses:
                running_losses[k] = 0.0
            running_losses[k] += v.item()

        successful_batches += 1

        if successful_batches % options.verbose_frequency == 0:
            postfix = {'loss': f'{running_loss / successful_batches:.4f}'}
            for k in loss_keys:
                postfix[k] = f'{running_losses[k] / successful_batches:.4f}'
            postfix['skipped'] = skipped_batches
            pbar.set_postfix(postfix)

    if successful_batches > 0:
        epoch_stats = {
            'total_loss': running_loss / successful_batches,
            'skipped_batches': skipped_batches,
            'successful_batches': successful_batches
        }
        for k, v in running_losses.items():
            epoch_stats[k] = v / successful_batches
    else:
        epoch_stats = {
            'total_loss': 0.0,
            'skipped_batches': skipped_batches,
            'successful_batches': 0
        }

    return epoch_stats


def checkpoint_name(config: Config, stage: int, epoch: int) -> str:
    timestamp = datetime.now().strftime("%Y_%m_%d_%H_%M_%S")
    return f'{config.model_name}_stage_{stage}_checkpoint__{epoch}__{timestamp}.pth'


def train_faster_rcnn_object_detector(training_data: GroundTruthTable, layers: Sequence[Layer],
                                      options: Sequence[TrainingOptions],
                                      config: Optional[Config] = None,
                                      resume_from: Optional[str] = None) -> FasterRCNNDetector:
    """
    Train a Faster R-CNN detector in four alternating stages.

    Args:
        training_data: Ground truth table; every class column is a detector class
        layers: Layer stack whose classifier width is num classes + 1
        options: Four TrainingOptions, one per stage
        config: Region sampling, image size and output settings
        resume_from: Checkpoint written during an earlier, interrupted run

    Returns:
        detector: Trained FasterRCNNDetector
    """
    options = list(options)
    if len(options) != 4:
        raise ValueError(f"Expected 4 training options (one per stage), got {len(options)}")
    if config is None:
        config = Config(training_data.class_names)

    validate_layers(layers)
    class_names = training_data.class_names
    if num_output_classes(layers) != len(class_names) + 1:
        raise ValueError(
            f"Last fully connected layer has {num_output_classes(layers)} outputs, "
            f"expected {len(class_names) + 1} (classes + background)"
        )
    if len(training_data) == 0:
        raise ValueError("Training data is empty")

    print("=" * 80)
    print("Training Faster R-CNN")
    print("=" * 80)
    print(f"Classes: {class_names}")
    print(f"Training images: {len(training_data)}")

    config.make_dirs()
    # A device chosen on the config wins over the per-stage default
    environment = config.execution_environment
    if environment == 'auto':
        environment = options[0].execution_environment
    device = resolve_device(environment)

    start_stage, start_epoch = 1, 1
    checkpoint = None
    if resume_from is not None:
        if not os.path.exists(resume_from):
            raise FileNotFoundError(f"Checkpoint not found: {resume_from}")
        print(f"Resuming from {resume_from}...")
        checkpoint = torch.load(resume_from, map_location=device)
        image_mean = checkpoint.get('image_mean')
        start_stage = checkpoint['stage']
        start_epoch = checkpoint['epoch'] + 1
        if start_epoch > options[start_stage - 1].max_epochs:
            start_stage, start_epoch = start_stage + 1, 1
    elif input_layer(layers).normalization == 'zerocenter':
        image_mean = compute_channel_mean(training_data)
    else:
        image_mean = None

    print(f"\nCreating model on device: {device}")
    model = build_faster_rcnn(layers, config, image_mean=image_mean)
    if checkpoint is not None:
        model.load_state_dict(checkpoint['model_state_dict'])
    model.to(device)

    dataset = DetectionDataset(training_data)
    training_history = checkpoint.get('history', []) if checkpoint is not None else []

    for stage, description, _, _ in TRAINING_STAGES:
        if stage < start_stage:
            continue

        stage_opts = options[stage - 1]
        loss_keys = configure_stage(model, stage, stage_opts)

        print(f"\nStage {stage}/4: {description}")
        print(f"  Solver: {stage_opts.solver_name}, LR: {stage_opts.initial_learn_rate}, "
              f"Epochs: {stage_opts.max_epochs}")

        params = [p for p in model.parameters() if p.requires_grad]
        optimizer = make_optimizer(params, stage_opts)
        lr_scheduler = make_lr_scheduler(optimizer, stage_opts)

        first_epoch = 1
        if checkpoint is not None and stage == checkpoint['stage'] and stage == start_stage:
            optimizer.load_state_dict(checkpoint['optimizer_state_dict'])
            lr_scheduler.load_state_dict(checkpoint['lr_scheduler_state_dict'])
            first_epoch = start_epoch

        data_loader = make_data_loader(dataset, stage_opts, config)

        for epoch in range(first_epoch, stage_opts.max_epochs + 1):
            epoch_stats = train_one_epoch(
                model, optimizer, data_loader, device, stage, epoch, loss_keys, stage_opts
            )

            lr_scheduler.step()
            current_lr = optimizer.param_groups[0]['lr']

            if stage_opts.verbose:
                print(f"  Stage {stage} Epoch {epoch}/{stage_opts.max_epochs}  "
                      f"LR: {current_lr:.2e}  Loss: {epoch_stats['total_loss']:.4f}")
                if epoch_stats['skipped_batches'] > 0:
                    print(f"    Skipped batches without boxes: {epoch_stats['skipped_batches']}")

            epoch_stats['stage'] = stage
            epoch_stats['epoch'] = epoch
            epoch_stats['lr'] = current_lr
            training_history.append(epoch_stats)

            if stage_opts.checkpoint_path:
                os.makedirs(stage_opts.checkpoint_path, exist_ok=True)
                checkpoint_path = os.path.join(
                    stage_opts.checkpoint_path, checkpoint_name(config, stage, epoch)
                )
                torch.save({
                    'stage': stage,
                    'epoch': epoch,
                    'model_state_dict': model.state_dict(),
                    'optimizer_state_dict': optimizer.state_dict(),
                    'lr_scheduler_state_dict': lr_scheduler.state_dict(),
                    'loss': epoch_stats['total_loss'],
                    'history': training_history,
                    'class_names': class_names,
                    'layers': layers_to_dicts(layers),
                    'image_mean': image_mean,
                    'config': config.to_dict(),
                }, checkpoint_path)
                if stage_opts.verbose:
                    print(f"    Saved checkpoint: {checkpoint_path}")

    set_trainable(model, ('backbone', 'rpn', 'roi_heads'))
    model.eval()
    detector = FasterRCNNDetector(model, class_names, layers, config, image_mean)

    detector_path = os.path.join(config.checkpoint_dir, f'{config.model_name}_detector.pth')
    detector.save(detector_path)
    print(f"\nSaved detector: {detector_path}")

    history_path = os.path.join(config.results_dir, f'{config.model_name}_training_history.json')
    with open(history_path, 'w') as f:
        json.dump(training_history, f, indent=2)
    print(f"Training history saved to {history_path}")

    plot_training_curves(training_history, config.results_dir, config.model_name)

    print("\nTraining completed!")
    return detector


# ============================================================================
# Visualization
# ============================================================================

def _finish_figure(save_path: Optional[str]):
    plt.tight_layout()
    if save_path:
        Path(save_path).parent.mkdir(parents=True, exist_ok=True)
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Figure saved to {save_path}")
    else:
        plt.show()
    plt.close()


def plot_training_curves(history: List[Dict], save_dir: str, model_name: str = 'model'):
    """Plot the loss of every stage against the overall epoch count."""
    if not history:
        return

    steps = list(range(1, len(history) + 1))
    stages = [h['stage'] for h in history]

    loss_keys = set()
    for h in history:
        for k in h.keys():
            if k not in HISTORY_META_KEYS:
                loss_keys.add(k)
    loss_keys = sorted(loss_keys)

    num_plots = 1 + len(loss_keys)
    cols = 3
    rows = (num_plots + cols - 1) // cols

    fig, axes = plt.subplots(rows, cols, figsize=(5*cols, 4*rows))
    axes = np.asarray(axes).flatten()

    keys = ['total_loss'] + loss_keys
    for ax, key in zip(axes, keys):
        for stage in sorted(set(stages)):
            xs = [s for s, st in zip(steps, stages) if st == stage]
            ys = [h.get(key, 0.0) for h, st in zip(history, stages) if st == stage]
            ax.plot(xs, ys, '-o', linewidth=2, markersize=3, label=f'Stage {stage}')
        ax.set_xlabel('Epoch')
        ax.set_ylabel(key)
        ax.set_title(f'{key} vs Epoch')
        ax.grid(True, alpha=0.3)
    axes[0].legend()

    for i in range(num_plots, len(axes)):
        axes[i].axis('off')

    _finish_figure(os.path.join(save_dir, f'{model_name}_training_curves.png'))


def show_ground_truth(image, boxes, save_path: Optional[str] = None):
    """Draw ground truth [x, y, w, h] boxes on an image."""
    if isinstance(image, (str, Path)):
        image = Image.open(image).convert('RGB')

    fig, ax = plt.subplots(1, figsize=(12, 8))
    ax.imshow(image)
    for x, y, w, h in np.asarray(boxes).reshape(-1, 4):
        ax.add_patch(patches.Rectangle((x, y), w, h, linewidth=2, edgecolor='yellow', facecolor='none'))
    ax.axis('off')
    _finish_figure(save_path)


def annotate_detections(image, boxes, scores, labels=None, save_path: Optional[str] = None):
    """Draw detections with their scores (and labels) on an image."""
    if isinstance(image, (str, Path)):
        image = Image.open(image).convert('RGB')

    fig, ax = plt.subplots(1, figsize=(12, 8))
    ax.imshow(image)

    colors = ['yellow', 'red', 'blue', 'green', 'purple', 'orange']
    label_names = sorted(set(labels)) if labels is not None else []

    for i, ((x, y, w, h), score) in enumerate(zip(np.asarray(boxes).reshape(-1, 4), scores)):
        if labels is not None:
            color = colors[label_names.index(labels[i]) % len(colors)]
            text = f"{labels[i]}: {score:.2f}"
        else:
            color = colors[0]
            text = f"{score:.2f}"

        ax.add_patch(patches.Rectangle((x, y), w, h, linewidth=2, edgecolor=color, facecolor='none'))
        ax.text(
            x, y - 5, text,
            color='black', fontsize=10,
            bbox=dict(facecolor=color, alpha=0.7, edgecolor='none', pad=2)
        )

    ax.axis('off')
    _finish_figure(save_path)


def plot_precision_recall(recall, precision, ap, class_names: Optional[Sequence[str]] = None,
                          save_path: Optional[str] = None):
    """Plot precision/recall curve(s), titled with the average precision."""
    fig, ax = plt.subplots(1, figsize=(8, 6))

    if isinstance(ap, (list, tuple)):
        names = class_names or [f'class {i + 1}' for i in range(len(ap))]
        for r, p, a, name in zip(recall, precision, ap, names):
            ax.plot(r, p, linewidth=2, label=f'{name} (AP = {a:.2f})')
        ax.legend()
        ax.set_title('Mean Average Precision = %.1f' % float(np.mean(ap)))
    else:
        ax.plot(recall, precision, linewidth=2)
        ax.set_title('Average Precision = %.1f' % ap)

    ax.set_xlabel('Recall')
    ax.set_ylabel('Precision')
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1.05)
    ax.grid(True)
    _finish_figure(save_path)


def plot_miss_rate(fppi, miss_rate, log_average_miss_rate, save_path: Optional[str] = None):
    """Plot miss rate against false positives per image on log axes."""
    fig, ax = plt.subplots(1, figsize=(8, 6))
    ax.loglog(np.maximum(fppi, 1e-3), np.maximum(miss_rate, 1e-3), linewidth=2)
    ax.set_xlabel('False Positives Per Image')
    ax.set_ylabel('Miss Rate')
    ax.set_title('Log Average Miss Rate = %.2f' % log_average_miss_rate)
    ax.grid(True, which='both')
    _finish_figure(save_path)


# ============================================================================
# Workflows
# ============================================================================

def load_data(config: Config):
    """Load the ground truth, keep the configured classes and split it."""
    table = load_ground_truth(config.ground_truth_path, data_root=config.data_root)
    table = table.select(config.classes)
    return split_ground_truth(
        table, config.train_fraction, shuffle=config.shuffle_split, seed=config.seed
    )


def train(config: Config, resume_from: Optional[str] = None) -> FasterRCNNDetector:
    """Main training function."""
    seed_everything(config.seed)
    training_data, _ = load_data(config)
    training_data.summary()
    layers = config.build_layers()
    return train_faster_rcnn_object_detector(
        training_data, layers, config.stage_options, config, resume_from=resume_from
    )


def evaluate(detector: FasterRCNNDetector, test_data: GroundTruthTable, config: Config) -> Dict:
    """Evaluate a detector on a test table; writes metrics and plots."""
    print("=" * 80)
    print("Evaluating Detector")
    print("=" * 80)

    config.make_dirs()
    results = run_detector(detector, test_data, threshold=config.eval_threshold)

    ap, recall, precision = evaluate_detection_precision(
        results, test_data, threshold=config.overlap_threshold
    )
    lamr, fppi, miss_rate = evaluate_detection_miss_rate(
        results, test_data, threshold=config.overlap_threshold
    )

    if isinstance(ap, list):
        metrics = {
            'average_precision': dict(zip(test_data.class_names, ap)),
            'mean_average_precision': float(np.mean(ap)),
            'log_average_miss_rate': dict(zip(test_data.class_names, lamr)),
        }
    else:
        metrics = {'average_precision': ap, 'log_average_miss_rate': lamr}
    metrics['num_test_images'] = len(test_data)
    metrics['total_detections'] = int(sum(len(r['Scores']) for r in results))

    print("\nEvaluation Results:")
    print(f"  Average Precision: {metrics['average_precision']}")
    print(f"  Log-Average Miss Rate: {metrics['log_average_miss_rate']}")

    results_path = os.path.join(config.results_dir, 'evaluation_results.json')
    with open(results_path, 'w') as f:
        json.dump(metrics, f, indent=2)
    print(f"\nResults saved to {results_path}")

    save_detection_results(results, os.path.join(config.results_dir, 'detection_results.json'))

    plot_precision_recall(
        recall, precision, ap, test_data.class_names,
        save_path=os.path.join(config.results_dir, 'precision_recall.png')
    )
    if not isinstance(lamr, list):
        plot_miss_rate(
            fppi, miss_rate, lamr,
            save_path=os.path.join(config.results_dir, 'miss_rate.png')
        )

    metrics['results'] = results
    return metrics


def test(config: Config, checkpoint_path: str) -> Dict:
    """Evaluate a saved detector on the test split."""
    print("=" * 80)
    print("Testing Model")
    print("=" * 80)

    _, test_data = load_data(config)
    print(f"Test images: {len(test_data)}")

    print(f"Loading detector from {checkpoint_path}...")
    detector = FasterRCNNDetector.load(checkpoint_path, device=config.device)
    return evaluate(detector, test_data, config)


def inference(config: Config, checkpoint_path: str, image_path: str, save_path: Optional[str] = None):
    """Run a saved detector on a single image."""
    print(f"Loading detector from {checkpoint_path}...")
    detector = FasterRCNNDetector.load(checkpoint_path, device=config.device)

    boxes, scores, labels = detector.detect(image_path, threshold=config.conf_threshold)

    print(f"\nDetected {len(boxes)} objects in {image_path}:")
    for i, (box, score, label) in enumerate(zip(boxes, scores, labels)):
        print(f"  {i+1}. {label}: {score:.3f} - Box: [{box[0]:.1f}, {box[1]:.1f}, {box[2]:.1f}, {box[3]:.1f}]")

    annotate_detections(image_path, boxes, scores, labels, save_path=save_path)
    return boxes, scores, labels


# ============================================================================
# Main Function
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Faster R-CNN for Traffic Sign Detection',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Train a stop sign detector
  python faster_rcnn.py --mode train --ground-truth data/stopSignsAndCars.json --classes stopSign

  # Train from a configuration file, resuming an interrupted run
  python faster_rcnn.py --mode train --config configs/stop_signs.yaml --resume /tmp/faster_rcnn_stage_2_checkpoint__3__....pth

  # Evaluate on the test split
  python faster_rcnn.py --mode test --checkpoint checkpoints/faster_rcnn_detector.pth

  # Run inference on a single image or a directory
  python faster_rcnn.py --mode inference --checkpoint checkpoints/faster_rcnn_detector.pth --image highway.png
  python faster_rcnn.py --mode inference --checkpoint checkpoints/faster_rcnn_detector.pth --image-dir path/to/images/
        """
    )

    parser.add_argument('--mode', type=str, required=True,
                        choices=['train', 'test', 'inference'],
                        help='Mode: train, test, or inference')
    parser.add_argument('--config', type=str, default=None,
                        help='YAML configuration file')

    # Dataset
    parser.add_argument('--ground-truth', type=str, default=None,
                        help='Ground truth JSON/YAML file')
    parser.add_argument('--data-root', type=str, default=None,
                        help='Directory that relative image paths are resolved against')
    parser.add_argument('--classes', type=str, default=None,
                        help='Comma-separated ground truth columns, e.g. "stopSign" or "carRear,carFront"')
    parser.add_argument('--train-fraction', type=float, default=None,
                        help='Fraction of rows used for training (default 0.8)')

    # Training
    parser.add_argument('--epochs', type=int, default=None,
                        help='Epochs for every training stage')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed')
    parser.add_argument('--device', type=str, default=None, choices=['auto', 'cpu', 'gpu'],
                        help='Execution environment')
    parser.add_argument('--resume', type=str, default=None,
                        help='Checkpoint to resume training from')

    # Inference
    parser.add_argument('--checkpoint', type=str, default=None,
                        help='Path to detector checkpoint')
    parser.add_argument('--image', type=str, default=None,
                        help='Path to input image for inference')
    parser.add_argument('--image-dir', type=str, default=None,
                        help='Directory of images for batch inference')
    parser.add_argument('--conf-threshold', type=float, default=None,
                        help='Confidence threshold for detections')

    # Output directories
    parser.add_argument('--checkpoint-dir', type=str, default=None,
                        help='Directory to save checkpoints')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory to save outputs')
    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config = Config.from_yaml(args.config) if args.config else Config()
    config.update_from_args(args)

    if args.mode == 'train':
        train(config, resume_from=args.resume)

    elif args.mode == 'test':
        if not args.checkpoint:
            print("Error: --checkpoint is required for test mode")
            return
        test(config, args.checkpoint)

    elif args.mode == 'inference':
        if not args.checkpoint:
            print("Error: --checkpoint is required for inference mode")
            return

        config.make_dirs()
        if args.image:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            save_path = os.path.join(config.output_dir, f'inference_{timestamp}.jpg')
            inference(config, args.checkpoint, args.image, save_path)

        elif args.image_dir:
            image_dir = Path(args.image_dir)
            image_files = sorted(list(image_dir.glob('*.jpg')) + list(image_dir.glob('*.png')))

            print(f"\nFound {len(image_files)} images in {args.image_dir}")

            for img_path in tqdm(image_files, desc="Processing images"):
                save_path = os.path.join(config.output_dir, f'inference_{img_path.stem}.jpg')
                inference(config, args.checkpoint, str(img_path), save_path)

        else:
            print("Error: Either --image or --image-dir is required for inference mode")


if __name__ == '__main__':
    main()
