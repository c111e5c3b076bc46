"""
Object Detection Using Faster R-CNN
====================================
Walks through training a stop sign detector end to end:

    * Load the data set.
    * Design the convolutional neural network.
    * Configure training options.
    * Train the Faster R-CNN object detector.
    * Evaluate the trained detector.

A small data set is enough to explore the training procedure, but a robust
detector needs many more labeled images. A CUDA GPU is highly recommended.

Usage:
    python train_stop_sign_detector.py --ground-truth data/stopSignsAndCars.json --do-training
    python train_stop_sign_detector.py --detector checkpoints/faster_rcnn_detector.pth \
        --results results/detection_results.json
"""

import os
import argparse
import tempfile

from faster_rcnn import (
    Config, FasterRCNNDetector, stage_options, seed_everything,
    train_faster_rcnn_object_detector, run_detector, save_detection_results,
    load_detection_results, show_ground_truth, annotate_detections,
    plot_precision_recall,
)
from ground_truth import load_ground_truth, split_ground_truth
from layers import default_layers
from detection_metrics import evaluate_detection_precision


def parse_args():
    parser = argparse.ArgumentParser(description='Train and evaluate a stop sign detector')
    parser.add_argument('--ground-truth', type=str, default='data/stopSignsAndCars.json',
                        help='Ground truth file with stopSign, carRear and carFront columns')
    parser.add_argument('--data-root', type=str, default='data',
                        help='Directory that image paths are resolved against')
    parser.add_argument('--image', type=str, default='data/highway.png',
                        help='Image used to check the trained detector')
    parser.add_argument('--do-training', action='store_true',
                        help='Train and evaluate instead of loading a saved detector and results')
    parser.add_argument('--detector', type=str, default='checkpoints/faster_rcnn_detector.pth',
                        help='Saved detector used when not training')
    parser.add_argument('--results', type=str, default='results/detection_results.json',
                        help='Saved test set results used when not training')
    parser.add_argument('--epochs', type=int, default=10,
                        help='Epochs for each of the four training stages')
    parser.add_argument('--results-dir', type=str, default='results')
    return parser.parse_args()


def main():
    args = parse_args()

    config = Config(classes=['stopSign'])
    config.ground_truth_path = args.ground_truth
    config.data_root = args.data_root
    config.results_dir = args.results_dir
    config.make_dirs()

    # ------------------------------------------------------------------
    # Load Dataset
    # ------------------------------------------------------------------
    stop_signs_and_cars = load_ground_truth(args.ground_truth, data_root=args.data_root)
    stop_signs_and_cars.summary()

    stop_signs = stop_signs_and_cars.select(['imageFilename', 'stopSign'])

    # Display one of the images and its labels
    show_ground_truth(
        stop_signs.image_filenames[0], stop_signs.boxes['stopSign'][0],
        save_path=os.path.join(config.results_dir, 'ground_truth_example.png')
    )

    # Use 80% of the data for training and the rest for evaluation
    training_data, test_data = split_ground_truth(stop_signs, train_fraction=0.8)
    print(f"Training images: {len(training_data)}, test images: {len(test_data)}")

    # ------------------------------------------------------------------
    # Create a Convolutional Neural Network
    # ------------------------------------------------------------------
    # All objects are larger than 16x16, so a 32x32 input balances
    # processing time against spatial detail. The classifier has one output
    # per table column: the stop sign class plus background.
    layers = default_layers(
        stop_signs.width,
        input_size=(32, 32, 3),
        filter_size=(3, 3),
        num_filters=32,
        weight_init_std=0.0001,
    )
    for layer in layers:
        print(f"  {layer!r}")

    # ------------------------------------------------------------------
    # Configure Training Options
    # ------------------------------------------------------------------
    # Stages 1-2 train the region proposal and detection networks, stages
    # 3-4 fine-tune them with a lower learning rate. Checkpoints in the temp
    # directory allow resuming an interrupted run.
    options = stage_options(
        checkpoint_path=tempfile.gettempdir(),
        max_epochs=args.epochs,
        learn_rates=(1e-5, 1e-5, 1e-6, 1e-6),
    )

    # ------------------------------------------------------------------
    # Train Faster R-CNN
    # ------------------------------------------------------------------
    # Positive samples overlap ground truth by 0.6 to 1.0 IoU, negatives by
    # 0 to 0.3. A box pyramid scale of 1.2 gives finer multiscale anchors.
    config.positive_overlap_range = [0.6, 1.0]
    config.negative_overlap_range = [0.0, 0.3]
    config.box_pyramid_scale = 1.2
    config.validate()

    if args.do_training:
        seed_everything(0)
        detector = train_faster_rcnn_object_detector(training_data, layers, options, config)
    else:
        detector = FasterRCNNDetector.load(args.detector, device=config.device)

    # Quick check on a single image
    boxes, scores, labels = detector.detect(args.image)
    annotate_detections(
        args.image, boxes, scores,
        save_path=os.path.join(config.results_dir, 'detection_example.png')
    )

    # ------------------------------------------------------------------
    # Evaluate Detector Using Test Set
    # ------------------------------------------------------------------
    if args.do_training:
        results = run_detector(detector, test_data, threshold=config.eval_threshold)
        save_detection_results(results, os.path.join(config.results_dir, 'detection_results.json'))
    else:
        results = load_detection_results(args.results)

    ap, recall, precision = evaluate_detection_precision(results, test_data)
    print(f"\nAverage Precision: {ap:.3f}")

    plot_precision_recall(
        recall, precision, ap,
        save_path=os.path.join(config.results_dir, 'precision_recall.png')
    )


if __name__ == '__main__':
    main()
