import math

import numpy as np
import pytest
import torch
from PIL import Image

from ground_truth import (
    GroundTruthTable, DetectionDataset, collate_fn, load_ground_truth,
    save_ground_truth, split_ground_truth, xywh_to_xyxy, xyxy_to_xywh,
)


def make_table(n):
    return GroundTruthTable(
        [f'img_{i}.png' for i in range(n)],
        {'stopSign': [[[i, i, 10, 10]] for i in range(n)]},
    )


def test_load_resolves_paths_and_summarizes(sign_data):
    path, root = sign_data
    table = load_ground_truth(path, data_root=root)

    assert len(table) == 6
    assert table.class_names == ['stopSign', 'carRear']
    assert table.width == 3
    assert table.image_filenames[0] == str(root / 'images' / 'image_000.png')

    info = table.summary(verbose=False)
    assert info['stopSign']['boxes'] == 6
    assert info['carRear']['images_with_boxes'] == 2


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_ground_truth(tmp_path / 'nope.json')


def test_load_yaml_with_class_order(tmp_path):
    path = tmp_path / 'gt.yaml'
    path.write_text(
        "classes: [carFront, stopSign]\n"
        "records:\n"
        "  - imageFilename: a.png\n"
        "    stopSign: [[1, 2, 3, 4]]\n"
    )
    table = load_ground_truth(path)
    assert table.class_names == ['carFront', 'stopSign']
    assert table.boxes['carFront'][0].shape == (0, 4)
    np.testing.assert_allclose(table.boxes['stopSign'][0], [[1, 2, 3, 4]])


def test_select_keeps_image_column(sign_data):
    path, root = sign_data
    table = load_ground_truth(path, data_root=root)

    stop_signs = table.select(['imageFilename', 'stopSign'])
    assert stop_signs.class_names == ['stopSign']
    assert stop_signs.width == 2
    assert stop_signs.image_filenames == table.image_filenames

    with pytest.raises(KeyError):
        table.select(['carFront'])


def test_invalid_boxes_rejected():
    with pytest.raises(ValueError):
        GroundTruthTable(['a.png'], {'stopSign': [[[1, 2, 3]]]})
    with pytest.raises(ValueError):
        GroundTruthTable(['a.png'], {'stopSign': [[[1, 2, 0, 4]]]})
    with pytest.raises(ValueError):
        GroundTruthTable(['a.png', 'b.png'], {'stopSign': [[]]})


@pytest.mark.parametrize('n', [0, 1, 7, 10, 295])
@pytest.mark.parametrize('fraction', [0.0, 0.6, 0.8, 1.0])
def test_split_partitions_rows(n, fraction):
    table = make_table(n)
    training, test = split_ground_truth(table, fraction)

    assert len(training) == math.floor(fraction * n)
    assert len(test) == n - math.floor(fraction * n)
    assert set(training.image_filenames).isdisjoint(test.image_filenames)
    assert sorted(training.image_filenames + test.image_filenames) == sorted(table.image_filenames)


def test_split_is_contiguous_without_shuffle():
    training, test = split_ground_truth(make_table(10), 0.8)
    assert training.image_filenames == [f'img_{i}.png' for i in range(8)]
    assert test.image_filenames == ['img_8.png', 'img_9.png']
    # Boxes travel with their rows
    np.testing.assert_allclose(test.boxes['stopSign'][0], [[8, 8, 10, 10]])


def test_split_shuffle_is_seeded():
    table = make_table(20)
    a, _ = split_ground_truth(table, 0.5, shuffle=True, seed=3)
    b, _ = split_ground_truth(table, 0.5, shuffle=True, seed=3)
    assert a.image_filenames == b.image_filenames
    assert len(a) == 10


def test_split_rejects_bad_fraction():
    with pytest.raises(ValueError):
        split_ground_truth(make_table(3), 1.5)


def test_slicing_and_rows():
    table = make_table(5)
    assert table[1:3].image_filenames == ['img_1.png', 'img_2.png']
    assert table.rows(3).image_filenames == ['img_3.png', 'img_4.png']
    assert table.row(2)['imageFilename'] == 'img_2.png'


def test_save_and_reload(tmp_path):
    table = make_table(3)
    save_ground_truth(table, tmp_path / 'out.json')
    reloaded = load_ground_truth(tmp_path / 'out.json')
    assert reloaded.image_filenames == table.image_filenames
    for a, b in zip(reloaded.boxes['stopSign'], table.boxes['stopSign']):
        np.testing.assert_allclose(a, b)


def test_from_yolo_converts_to_pixels(tmp_path):
    image_dir = tmp_path / 'images'
    label_dir = tmp_path / 'labels'
    image_dir.mkdir()
    label_dir.mkdir()
    Image.new('RGB', (100, 50)).save(image_dir / 'a.png')
    Image.new('RGB', (100, 50)).save(image_dir / 'b.png')
    (label_dir / 'a.txt').write_text("0 0.5 0.5 0.2 0.4\n1 0.1 0.1 0.0 0.1\nbad line\n")

    table = GroundTruthTable.from_yolo(image_dir, label_dir, ['stopSign', 'carRear'])

    assert len(table) == 2
    np.testing.assert_allclose(table.boxes['stopSign'][0], [[40, 15, 20, 20]])
    # Zero-width box is dropped
    assert table.boxes['carRear'][0].shape == (0, 4)
    # Image without a label file has no boxes
    assert table.boxes['stopSign'][1].shape == (0, 4)


def test_box_conversions():
    xywh = np.array([[10, 20, 5, 8]], dtype=np.float32)
    xyxy = xywh_to_xyxy(xywh)
    np.testing.assert_allclose(xyxy, [[10, 20, 15, 28]])
    np.testing.assert_allclose(xyxy_to_xywh(xyxy), xywh)


def test_dataset_targets(sign_data):
    path, root = sign_data
    table = load_ground_truth(path, data_root=root)
    dataset = DetectionDataset(table)

    image, target = dataset[0]
    assert image.shape == (3, 64, 64)
    assert target['boxes'].shape == (2, 4)
    assert target['labels'].tolist() == [1, 2]
    # xyxy
    x, y, w, h = table.boxes['stopSign'][0][0]
    assert torch.allclose(target['boxes'][0], torch.tensor([x, y, x + w, y + h]))

    _, target = dataset[1]
    assert target['labels'].tolist() == [1]

    images, targets = collate_fn([dataset[0], dataset[1]])
    assert len(images) == 2 and len(targets) == 2


def test_dataset_missing_image(tmp_path):
    table = GroundTruthTable([str(tmp_path / 'missing.png')], {'stopSign': [[]]})
    with pytest.raises(FileNotFoundError):
        DetectionDataset(table)[0]
