"""
Layer Stack Descriptors
=======================
A small, declarative description of the CNN used inside Faster R-CNN.

The stack reads top to bottom: image input, convolution blocks, fully
connected layers, softmax and classification. Convolution blocks become the
shared backbone, hidden fully connected layers the box head, and the last
fully connected layer sizes the class predictor.
"""

from typing import Dict, List, Sequence, Tuple

import torch.nn as nn


def _pair(value) -> Tuple[int, int]:
    if isinstance(value, (list, tuple)):
        if len(value) != 2:
            raise ValueError(f"Expected a scalar or a pair, got {value}")
        return int(value[0]), int(value[1])
    return int(value), int(value)


# ============================================================================
# Layer Specifications
# ============================================================================

class Layer:
    """Base class for layer specifications."""

    type_name = 'layer'

    def params(self) -> Dict:
        return {}

    def to_dict(self) -> Dict:
        return {'type': self.type_name, **self.params()}

    def __eq__(self, other):
        return type(self) is type(other) and self.params() == other.params()

    def __repr__(self):
        args = ', '.join(f"{k}={v!r}" for k, v in self.params().items())
        return f"{type(self).__name__}({args})"


class ImageInputLayer(Layer):
    """
    Network input. For detection the size should be close to the smallest
    object in the data, not the full image size.
    """

    type_name = 'imageInput'

    def __init__(self, size=(32, 32, 3), normalization: str = 'zerocenter'):
        if len(size) != 3:
            raise ValueError(f"Input size must be [height, width, channels], got {size}")
        if normalization not in ('zerocenter', 'none'):
            raise ValueError(f"Unknown normalization '{normalization}'")
        self.size = tuple(int(s) for s in size)
        self.normalization = normalization

    @property
    def channels(self) -> int:
        return self.size[2]

    def params(self):
        return {'size': list(self.size), 'normalization': self.normalization}


class Convolution2dLayer(Layer):
    type_name = 'convolution2d'

    def __init__(self, filter_size, num_filters: int, padding=0, stride=1, weight_init_std=None):
        self.filter_size = _pair(filter_size)
        self.num_filters = int(num_filters)
        self.padding = _pair(padding)
        self.stride = _pair(stride)
        # None keeps PyTorch's default initialization
        self.weight_init_std = weight_init_std

    def params(self):
        return {
            'filter_size': list(self.filter_size),
            'num_filters': self.num_filters,
            'padding': list(self.padding),
            'stride': list(self.stride),
            'weight_init_std': self.weight_init_std,
        }


class ReluLayer(Layer):
    type_name = 'relu'


class MaxPooling2dLayer(Layer):
    type_name = 'maxPooling2d'

    def __init__(self, pool_size, stride=None, padding=0):
        self.pool_size = _pair(pool_size)
        self.stride = _pair(stride) if stride is not None else self.pool_size
        self.padding = _pair(padding)

    def params(self):
        return {
            'pool_size': list(self.pool_size),
            'stride': list(self.stride),
            'padding': list(self.padding),
        }


class FullyConnectedLayer(Layer):
    type_name = 'fullyConnected'

    def __init__(self, output_size: int):
        if int(output_size) <= 0:
            raise ValueError(f"output_size must be positive, got {output_size}")
        self.output_size = int(output_size)

    def params(self):
        return {'output_size': self.output_size}


class SoftmaxLayer(Layer):
    type_name = 'softmax'


class ClassificationLayer(Layer):
    type_name = 'classification'


LAYER_TYPES = {
    cls.type_name: cls
    for cls in (ImageInputLayer, Convolution2dLayer, ReluLayer, MaxPooling2dLayer,
                FullyConnectedLayer, SoftmaxLayer, ClassificationLayer)
}


def layers_to_dicts(layers: Sequence[Layer]) -> List[Dict]:
    return [layer.to_dict() for layer in layers]


def layers_from_dicts(dicts: Sequence[Dict]) -> List[Layer]:
    layers = []
    for d in dicts:
        d = dict(d)
        type_name = d.pop('type')
        if type_name not in LAYER_TYPES:
            raise ValueError(f"Unknown layer type '{type_name}'")
        layers.append(LAYER_TYPES[type_name](**d))
    return layers


# ============================================================================
# Default Stack
# ============================================================================

def default_layers(num_classes: int, input_size=(32, 32, 3), filter_size=(3, 3),
                   num_filters: int = 32, hidden_size: int = 64,
                   weight_init_std: float = 0.0001) -> List[Layer]:
    """
    Build the tutorial network.

    Args:
        num_classes: Classifier outputs, object classes plus background
            (the width of the ground truth table)
        input_size: [height, width, channels]; all objects in the data set
            should be larger than about half of this
        filter_size: Convolution filter size
        num_filters: Number of convolution filters
        hidden_size: Width of the hidden fully connected layer
        weight_init_std: Std of the Gaussian used for the conv weights

    Returns:
        List of layer specifications
    """
    image_input = ImageInputLayer(input_size)

    # Repeat this block for a deeper network, keeping the number of pooling
    # layers low so small objects are not downsampled away.
    middle_layers = [
        Convolution2dLayer(filter_size, num_filters, padding=1, weight_init_std=weight_init_std),
        ReluLayer(),
        MaxPooling2dLayer(3, stride=2),
    ]

    final_layers = [
        FullyConnectedLayer(hidden_size),
        ReluLayer(),
        FullyConnectedLayer(num_classes),
        SoftmaxLayer(),
        ClassificationLayer(),
    ]

    return [image_input] + middle_layers + final_layers


# ============================================================================
# Stack Inspection
# ============================================================================

def _first_fc_index(layers: Sequence[Layer]) -> int:
    for i, layer in enumerate(layers):
        if isinstance(layer, FullyConnectedLayer):
            return i
    return len(layers)


def validate_layers(layers: Sequence[Layer]):
    """Raise ValueError if the stack cannot be turned into a Faster R-CNN."""
    if len(layers) < 4:
        raise ValueError("Layer stack is too short")
    if not isinstance(layers[0], ImageInputLayer):
        raise ValueError("First layer must be an ImageInputLayer")
    if not isinstance(layers[-1], ClassificationLayer) or not isinstance(layers[-2], SoftmaxLayer):
        raise ValueError("Layer stack must end with SoftmaxLayer, ClassificationLayer")

    split = _first_fc_index(layers)
    block = layers[1:split]
    tail = layers[split:-2]

    if not any(isinstance(l, Convolution2dLayer) for l in block):
        raise ValueError("At least one Convolution2dLayer is required before the fully connected layers")
    for layer in block:
        if not isinstance(layer, (Convolution2dLayer, ReluLayer, MaxPooling2dLayer)):
            raise ValueError(f"{layer!r} cannot appear in the convolutional block")
    if not tail or not isinstance(tail[-1], FullyConnectedLayer):
        raise ValueError("The layer before SoftmaxLayer must be a FullyConnectedLayer")
    for layer in tail:
        if not isinstance(layer, (FullyConnectedLayer, ReluLayer)):
            raise ValueError(f"{layer!r} cannot appear after the first fully connected layer")
    if num_output_classes(layers) < 2:
        raise ValueError("The classifier needs at least two outputs (object classes + background)")

    # Walk the block so an input that is too small fails here
    feature_map_size(layers)


def input_layer(layers: Sequence[Layer]) -> ImageInputLayer:
    return layers[0]


def feature_layers(layers: Sequence[Layer]) -> List[Layer]:
    return list(layers[1:_first_fc_index(layers)])


def head_layers(layers: Sequence[Layer]) -> List[Layer]:
    """Fully connected layers and activations, excluding the classifier."""
    return list(layers[_first_fc_index(layers):-3])


def num_output_classes(layers: Sequence[Layer]) -> int:
    return layers[-3].output_size


def feature_channels(layers: Sequence[Layer]) -> int:
    channels = input_layer(layers).channels
    for layer in feature_layers(layers):
        if isinstance(layer, Convolution2dLayer):
            channels = layer.num_filters
    return channels


def feature_stride(layers: Sequence[Layer]) -> int:
    """Total downsampling factor of the convolutional block."""
    stride = 1
    for layer in feature_layers(layers):
        if isinstance(layer, (Convolution2dLayer, MaxPooling2dLayer)):
            stride *= layer.stride[0]
    return stride


def feature_map_size(layers: Sequence[Layer]) -> Tuple[int, int]:
    """Spatial size of the conv block output for the input layer size."""
    h, w = input_layer(layers).size[:2]
    for layer in feature_layers(layers):
        if isinstance(layer, Convolution2dLayer):
            kernel = layer.filter_size
        elif isinstance(layer, MaxPooling2dLayer):
            kernel = layer.pool_size
        else:
            continue
        h = (h + 2 * layer.padding[0] - kernel[0]) // layer.stride[0] + 1
        w = (w + 2 * layer.padding[1] - kernel[1]) // layer.stride[1] + 1
        if h <= 0 or w <= 0:
            raise ValueError(f"Input size {input_layer(layers).size} is too small for {layer!r}")
    return h, w


# ============================================================================
# Module Construction
# ============================================================================

class ConvBackbone(nn.Module):
    """Shared convolutional block. Exposes out_channels for torchvision."""

    def __init__(self, layers: Sequence[Layer]):
        super().__init__()
        modules = []
        in_channels = input_layer(layers).channels

        for layer in feature_layers(layers):
            if isinstance(layer, Convolution2dLayer):
                conv = nn.Conv2d(
                    in_channels, layer.num_filters,
                    kernel_size=layer.filter_size,
                    stride=layer.stride,
                    padding=layer.padding,
                )
                if layer.weight_init_std is not None:
                    nn.init.normal_(conv.weight, mean=0.0, std=layer.weight_init_std)
                    nn.init.zeros_(conv.bias)
                modules.append(conv)
                in_channels = layer.num_filters
            elif isinstance(layer, ReluLayer):
                modules.append(nn.ReLU(inplace=True))
            elif isinstance(layer, MaxPooling2dLayer):
                modules.append(nn.MaxPool2d(layer.pool_size, stride=layer.stride, padding=layer.padding))

        self.body = nn.Sequential(*modules)
        self.out_channels = in_channels

    def forward(self, x):
        return self.body(x)


def build_backbone(layers: Sequence[Layer]) -> ConvBackbone:
    return ConvBackbone(layers)


def build_box_head(layers: Sequence[Layer]) -> Tuple[nn.Module, int]:
    """
    Hidden fully connected layers applied to each pooled region.

    Returns:
        (module, representation_size) where representation_size feeds the
        class/box predictor
    """
    h, w = feature_map_size(layers)
    in_features = feature_channels(layers) * h * w

    modules = [nn.Flatten(start_dim=1)]
    size = in_features
    for layer in head_layers(layers):
        if isinstance(layer, FullyConnectedLayer):
            modules.append(nn.Linear(size, layer.output_size))
            size = layer.output_size
        elif isinstance(layer, ReluLayer):
            modules.append(nn.ReLU(inplace=True))

    return nn.Sequential(*modules), size
