import math
import tempfile

import pytest

from faster_rcnn import Config, TrainingOptions, training_options, stage_options, build_parser


def test_training_options_defaults():
    options = training_options('sgdm')
    assert options.momentum == 0.9
    assert options.l2_regularization == 1e-4
    assert options.checkpoint_path == ''
    assert math.isinf(options.gradient_threshold)

    assert training_options('adam').squared_gradient_decay_factor == 0.999
    assert training_options('rmsprop').squared_gradient_decay_factor == 0.9


@pytest.mark.parametrize('kwargs', [
    {'max_epochs': 0},
    {'initial_learn_rate': 0},
    {'initial_learn_rate': -1e-3},
    {'mini_batch_size': 0},
    {'learn_rate_schedule': 'cosine'},
    {'shuffle': 'sometimes'},
    {'execution_environment': 'tpu'},
    {'momentum': 1.5},
    {'verbose_frequency': 0},
    {'verbose_frequency': -5},
])
def test_training_options_rejects_bad_values(kwargs):
    with pytest.raises(ValueError):
        training_options('sgdm', **kwargs)


def test_unknown_solver():
    with pytest.raises(ValueError):
        training_options('lbfgs')


def test_stage_options():
    options = stage_options()
    assert len(options) == 4
    assert [o.initial_learn_rate for o in options] == [1e-5, 1e-5, 1e-6, 1e-6]
    assert all(o.max_epochs == 10 for o in options)
    assert all(o.solver_name == 'sgdm' for o in options)
    assert all(o.checkpoint_path == tempfile.gettempdir() for o in options)


def test_config_defaults():
    config = Config()
    assert config.classes == ['stopSign']
    assert config.num_classes == 2
    assert config.positive_overlap_range == [0.6, 1.0]
    assert config.negative_overlap_range == [0.0, 0.3]
    assert config.box_pyramid_scale == 1.2
    assert len(config.stage_options) == 4


@pytest.mark.parametrize('field, value', [
    ('positive_overlap_range', [0.6, 0.9]),
    ('negative_overlap_range', [0.1, 0.3]),
    ('negative_overlap_range', [0.0, 0.7]),
    ('positive_overlap_range', [1.0, 0.5]),
    ('train_fraction', 1.2),
    ('box_pyramid_scale', 1.0),
])
def test_config_validation(field, value):
    config = Config()
    setattr(config, field, value)
    with pytest.raises(ValueError):
        config.validate()


def test_update_rejects_unknown_keys():
    with pytest.raises(ValueError):
        Config().update({'learning_rate': 0.1})


def test_from_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "classes: [carRear, carFront]\n"
        "train_fraction: 0.6\n"
        "stage_options:\n"
        "  - {solver_name: adam, max_epochs: 2, initial_learn_rate: 0.001}\n"
        "  - {solver_name: sgdm, max_epochs: 2, initial_learn_rate: 0.001}\n"
        "  - {solver_name: sgdm, max_epochs: 1, initial_learn_rate: 0.0001}\n"
        "  - {solver_name: sgdm, max_epochs: 1, initial_learn_rate: 0.0001}\n"
    )
    config = Config.from_yaml(path)

    assert config.classes == ['carRear', 'carFront']
    assert config.num_classes == 3
    assert config.train_fraction == 0.6
    assert isinstance(config.stage_options[0], TrainingOptions)
    assert config.stage_options[0].solver_name == 'adam'
    assert config.stage_options[3].max_epochs == 1


def test_dict_round_trip():
    config = Config(['stopSign', 'carRear'])
    config.min_size = 300
    config.stage_options[2].initial_learn_rate = 3e-4

    restored = Config.from_dict(config.to_dict())

    assert restored.classes == ['stopSign', 'carRear']
    assert restored.min_size == 300
    assert restored.stage_options[2].initial_learn_rate == 3e-4
    assert math.isinf(restored.stage_options[0].gradient_threshold)


def test_update_from_args():
    args = build_parser().parse_args([
        '--mode', 'train', '--classes', 'carRear,carFront', '--epochs', '3',
        '--checkpoint-dir', 'ckpts', '--train-fraction', '0.5', '--device', 'cpu',
    ])
    config = Config()
    config.update_from_args(args)

    assert config.classes == ['carRear', 'carFront']
    assert all(o.max_epochs == 3 for o in config.stage_options)
    assert all(o.checkpoint_path == 'ckpts' for o in config.stage_options)
    assert config.train_fraction == 0.5
    assert config.device.type == 'cpu'
    assert all(o.execution_environment == 'cpu' for o in config.stage_options)


@pytest.mark.parametrize('epochs', ['0', '-2'])
def test_update_from_args_validates_epochs(epochs):
    args = build_parser().parse_args(['--mode', 'train', '--epochs', epochs])
    with pytest.raises(ValueError):
        Config().update_from_args(args)


def test_yaml_device_reaches_every_stage(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("execution_environment: cpu\n")
    config = Config.from_yaml(path)

    assert config.execution_environment == 'cpu'
    assert all(o.execution_environment == 'cpu' for o in config.stage_options)

    with pytest.raises(ValueError):
        Config().update({'execution_environment': 'tpu'})
