import json

import numpy as np
import pytest
import torch

import faster_rcnn

from conftest import write_sign_images
from faster_rcnn import (
    Config, FasterRCNNDetector, training_options, build_faster_rcnn, anchor_sizes,
    configure_stage, train_faster_rcnn_object_detector, run_detector, evaluate,
    seed_everything, to_image_tensor, save_detection_results, load_detection_results,
    main,
)
from ground_truth import load_ground_truth, split_ground_truth
from layers import default_layers


def small_config(root, classes=('stopSign',)):
    config = Config(list(classes))
    config.min_size = 64
    config.max_size = 64
    config.num_workers = 0
    config.num_strongest_regions = 200
    config.execution_environment = 'cpu'
    config.checkpoint_dir = str(root / 'checkpoints')
    config.results_dir = str(root / 'results')
    config.output_dir = str(root / 'outputs')
    return config


def small_options(checkpoint_path):
    return [
        training_options('sgdm', max_epochs=1, initial_learn_rate=1e-3,
                         checkpoint_path=str(checkpoint_path), mini_batch_size=32,
                         verbose=False, execution_environment='cpu')
        for _ in range(4)
    ]


@pytest.fixture(scope='module')
def trained(tmp_path_factory):
    root = tmp_path_factory.mktemp('trained')
    path = write_sign_images(root, num_images=6)
    table = load_ground_truth(path, data_root=root).select(['stopSign'])
    training_data, test_data = split_ground_truth(table, 0.8)

    config = small_config(root)
    seed_everything(0)
    detector = train_faster_rcnn_object_detector(
        training_data, default_layers(table.width), small_options(root / 'stages'), config
    )
    return detector, config, training_data, test_data, root


def test_anchor_sizes_follow_pyramid_scale():
    config = Config()
    sizes = anchor_sizes(default_layers(2), config)
    assert len(sizes) == config.num_box_pyramid_levels
    assert sizes[0] == pytest.approx(32.0)
    assert sizes[1] == pytest.approx(38.4)


def test_untrained_model_runs_inference():
    config = Config()
    config.min_size = 64
    config.max_size = 64
    model = build_faster_rcnn(default_layers(2), config, image_mean=[0.5, 0.5, 0.5])
    model.eval()

    with torch.no_grad():
        outputs = model([torch.rand(3, 64, 80)])

    assert set(outputs[0].keys()) == {'boxes', 'scores', 'labels'}
    assert model.transform.image_mean == [0.5, 0.5, 0.5]
    assert model.roi_heads.proposal_matcher.high_threshold == pytest.approx(0.6)
    assert model.roi_heads.proposal_matcher.low_threshold == pytest.approx(0.3)


@pytest.mark.parametrize('stage, trainable', [
    (1, {'backbone', 'rpn'}),
    (2, {'backbone', 'roi_heads'}),
    (3, {'rpn'}),
    (4, {'roi_heads'}),
])
def test_configure_stage_freezes_shared_layers(stage, trainable):
    model = build_faster_rcnn(default_layers(2), Config())
    options = training_options('sgdm', mini_batch_size=64)
    configure_stage(model, stage, options)

    for name, param in model.named_parameters():
        assert param.requires_grad == (name.split('.')[0] in trainable), name

    if stage in (1, 3):
        assert model.rpn.fg_bg_sampler.batch_size_per_image == 64
    else:
        assert model.roi_heads.fg_bg_sampler.batch_size_per_image == 64


def test_trainer_argument_checks(sign_data):
    path, root = sign_data
    table = load_ground_truth(path, data_root=root).select(['stopSign'])
    config = small_config(root)

    with pytest.raises(ValueError):
        train_faster_rcnn_object_detector(table, default_layers(2), small_options(root)[:3], config)
    with pytest.raises(ValueError):
        # Classifier width must be classes + background
        train_faster_rcnn_object_detector(table, default_layers(3), small_options(root), config)
    with pytest.raises(FileNotFoundError):
        train_faster_rcnn_object_detector(table, default_layers(2), small_options(root), config,
                                          resume_from=str(root / 'missing.pth'))


def test_training_writes_checkpoints_and_history(trained):
    detector, config, _, _, root = trained

    assert detector.class_names == ['stopSign']
    checkpoints = sorted(p.name for p in (root / 'stages').glob('faster_rcnn_stage_*_checkpoint__*.pth'))
    assert len(checkpoints) == 4
    assert [c.split('_')[3] for c in checkpoints] == ['1', '2', '3', '4']

    assert (root / 'checkpoints' / 'faster_rcnn_detector.pth').exists()
    with open(root / 'results' / 'faster_rcnn_training_history.json') as f:
        history = json.load(f)
    assert [h['stage'] for h in history] == [1, 2, 3, 4]
    assert all(np.isfinite(h['total_loss']) for h in history)
    assert (root / 'results' / 'faster_rcnn_training_curves.png').exists()


def test_detect_returns_sorted_xywh(trained):
    detector, _, _, test_data, _ = trained
    boxes, scores, labels = detector.detect(test_data.image_filenames[0], threshold=0.0)

    assert boxes.ndim == 2 and boxes.shape[1] == 4
    assert len(boxes) == len(scores) == len(labels)
    assert np.all(np.diff(scores) <= 0)
    assert set(labels) <= {'stopSign'}
    if len(boxes):
        assert np.all(boxes[:, 2] >= 0) and np.all(boxes[:, 3] >= 0)


def test_save_and_load_detector(trained, tmp_path):
    detector, _, _, test_data, _ = trained
    path = tmp_path / 'detector.pth'
    detector.save(path)

    loaded = FasterRCNNDetector.load(str(path), device='cpu')
    assert loaded.class_names == detector.class_names
    assert loaded.layers == detector.layers
    assert loaded.image_mean == pytest.approx(detector.image_mean)

    image = test_data.image_filenames[0]
    _, scores_a, _ = detector.detect(image, threshold=0.0)
    _, scores_b, _ = loaded.detect(image, threshold=0.0)
    np.testing.assert_allclose(scores_a, scores_b, rtol=1e-5, atol=1e-6)


def test_load_missing_detector(tmp_path):
    with pytest.raises(FileNotFoundError):
        FasterRCNNDetector.load(str(tmp_path / 'nope.pth'))


def test_run_detector_and_evaluate(trained):
    detector, config, _, test_data, root = trained

    results = run_detector(detector, test_data, threshold=0.0)
    assert len(results) == len(test_data)
    assert set(results[0].keys()) == {'Boxes', 'Scores', 'Labels'}

    metrics = evaluate(detector, test_data, config)
    assert 0.0 <= metrics['average_precision'] <= 1.0
    assert 0.0 <= metrics['log_average_miss_rate'] <= 1.0
    assert metrics['num_test_images'] == len(test_data)
    assert (root / 'results' / 'evaluation_results.json').exists()
    assert (root / 'results' / 'precision_recall.png').exists()


def test_resume_from_stage_checkpoint(trained, tmp_path):
    _, config, training_data, _, root = trained
    stage_2 = next((root / 'stages').glob('faster_rcnn_stage_2_checkpoint__*.pth'))

    resumed_config = Config.from_dict(config.to_dict())
    resumed_config.checkpoint_dir = str(tmp_path / 'checkpoints')
    resumed_config.results_dir = str(tmp_path / 'results')
    resumed_config.output_dir = str(tmp_path / 'outputs')

    detector = train_faster_rcnn_object_detector(
        training_data, default_layers(2), small_options(tmp_path / 'stages'),
        resumed_config, resume_from=str(stage_2)
    )

    assert isinstance(detector, FasterRCNNDetector)
    # Only stages 3 and 4 run again
    new_checkpoints = sorted(p.name for p in (tmp_path / 'stages').glob('*.pth'))
    assert [c.split('_')[3] for c in new_checkpoints] == ['3', '4']
    with open(tmp_path / 'results' / 'faster_rcnn_training_history.json') as f:
        assert [h['stage'] for h in json.load(f)] == [1, 2, 3, 4]


def test_detection_results_round_trip(tmp_path):
    results = [
        {'Boxes': np.array([[1, 2, 3, 4]], dtype=np.float32), 'Scores': np.array([0.7]), 'Labels': ['stopSign']},
        {'Boxes': np.zeros((0, 4)), 'Scores': np.zeros(0), 'Labels': []},
    ]
    save_detection_results(results, tmp_path / 'results.json')
    loaded = load_detection_results(tmp_path / 'results.json')

    np.testing.assert_allclose(loaded[0]['Boxes'], [[1, 2, 3, 4]])
    assert loaded[0]['Labels'] == ['stopSign']
    assert loaded[1]['Boxes'].shape == (0, 4)


def test_to_image_tensor_accepts_arrays():
    tensor = to_image_tensor(np.zeros((10, 12, 3), dtype=np.uint8))
    assert tensor.shape == (3, 10, 12)
    with pytest.raises(FileNotFoundError):
        to_image_tensor('does/not/exist.png')


def test_cli_requires_checkpoint(capsys):
    main(['--mode', 'test'])
    assert "--checkpoint is required" in capsys.readouterr().out


def test_trainer_uses_config_device(sign_data, monkeypatch):
    path, root = sign_data
    table = load_ground_truth(path, data_root=root).select(['stopSign'])
    config = small_config(root)
    options = [training_options('sgdm', max_epochs=1, verbose=False) for _ in range(4)]
    assert all(o.execution_environment == 'auto' for o in options)

    requested = []

    def record(environment='auto'):
        requested.append(environment)
        return torch.device('cpu')

    monkeypatch.setattr(faster_rcnn, 'resolve_device', record)
    # Stops right after the device is chosen
    with pytest.raises(FileNotFoundError):
        train_faster_rcnn_object_detector(table, default_layers(2), options, config,
                                          resume_from=str(root / 'missing.pth'))
    assert requested == ['cpu']


@pytest.mark.skipif(torch.cuda.is_available(), reason="needs a machine without CUDA")
def test_trainer_rejects_gpu_without_cuda(sign_data):
    path, root = sign_data
    table = load_ground_truth(path, data_root=root).select(['stopSign'])
    config = small_config(root)
    config.execution_environment = 'gpu'

    with pytest.raises(RuntimeError):
        train_faster_rcnn_object_detector(table, default_layers(2), small_options(root), config)
