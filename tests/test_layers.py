import pytest
import torch

from layers import (
    ImageInputLayer, Convolution2dLayer, ReluLayer, MaxPooling2dLayer,
    FullyConnectedLayer, SoftmaxLayer, ClassificationLayer,
    default_layers, validate_layers, feature_map_size, feature_channels,
    feature_stride, num_output_classes, build_backbone, build_box_head,
    layers_to_dicts, layers_from_dicts,
)


def test_default_stack_shape():
    layers = default_layers(2)

    assert [type(l) for l in layers] == [
        ImageInputLayer, Convolution2dLayer, ReluLayer, MaxPooling2dLayer,
        FullyConnectedLayer, ReluLayer, FullyConnectedLayer, SoftmaxLayer,
        ClassificationLayer,
    ]
    validate_layers(layers)
    # 32 -> conv pad 1 -> 32 -> pool 3 stride 2 -> 15
    assert feature_map_size(layers) == (15, 15)
    assert feature_channels(layers) == 32
    assert feature_stride(layers) == 2
    assert num_output_classes(layers) == 2


def test_backbone_output():
    layers = default_layers(2)
    backbone = build_backbone(layers)

    assert backbone.out_channels == 32
    out = backbone(torch.rand(1, 3, 32, 32))
    assert out.shape == (1, 32, 15, 15)


def test_conv_weights_use_small_gaussian():
    backbone = build_backbone(default_layers(2, weight_init_std=0.0001))
    conv = backbone.body[0]
    assert conv.weight.shape == (32, 3, 3, 3)
    assert conv.weight.abs().max().item() < 0.01
    assert torch.all(conv.bias == 0)


def test_box_head_representation():
    layers = default_layers(3, hidden_size=64)
    head, size = build_box_head(layers)
    assert size == 64
    assert head(torch.rand(5, 32, 15, 15)).shape == (5, 64)


def test_box_head_without_hidden_layer():
    layers = [
        ImageInputLayer((16, 16, 3)),
        Convolution2dLayer(3, 8, padding=1),
        ReluLayer(),
        FullyConnectedLayer(2),
        SoftmaxLayer(),
        ClassificationLayer(),
    ]
    validate_layers(layers)
    head, size = build_box_head(layers)
    assert size == 8 * 16 * 16


@pytest.mark.parametrize('layers', [
    # No input layer
    [Convolution2dLayer(3, 8), ReluLayer(), FullyConnectedLayer(2), SoftmaxLayer(), ClassificationLayer()],
    # No convolution
    [ImageInputLayer(), FullyConnectedLayer(2), SoftmaxLayer(), ClassificationLayer()],
    # Missing classification
    [ImageInputLayer(), Convolution2dLayer(3, 8), FullyConnectedLayer(2), SoftmaxLayer()],
    # Pooling after the fully connected layers
    [ImageInputLayer(), Convolution2dLayer(3, 8), FullyConnectedLayer(4), MaxPooling2dLayer(2),
     FullyConnectedLayer(2), SoftmaxLayer(), ClassificationLayer()],
    # Single output class
    [ImageInputLayer(), Convolution2dLayer(3, 8), FullyConnectedLayer(1), SoftmaxLayer(), ClassificationLayer()],
    # Input too small for the pooling
    [ImageInputLayer((4, 4, 3)), Convolution2dLayer(3, 8), MaxPooling2dLayer(3, stride=2),
     FullyConnectedLayer(2), SoftmaxLayer(), ClassificationLayer()],
])
def test_invalid_stacks(layers):
    with pytest.raises(ValueError):
        validate_layers(layers)


def test_layer_argument_validation():
    with pytest.raises(ValueError):
        ImageInputLayer((32, 32))
    with pytest.raises(ValueError):
        ImageInputLayer(normalization='rescale')
    with pytest.raises(ValueError):
        FullyConnectedLayer(0)


def test_serialization_round_trip():
    layers = default_layers(4, input_size=(48, 48, 3), num_filters=16)
    assert layers_from_dicts(layers_to_dicts(layers)) == layers

    with pytest.raises(ValueError):
        layers_from_dicts([{'type': 'dropout'}])
