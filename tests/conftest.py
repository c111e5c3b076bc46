import json

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pytest
from PIL import Image


def write_sign_images(root, num_images=6, size=64, seed=0):
    """Write images with one red square ("stop sign") each plus a ground truth file."""
    rng = np.random.RandomState(seed)
    image_dir = root / 'images'
    image_dir.mkdir(parents=True, exist_ok=True)

    records = []
    for i in range(num_images):
        pixels = np.full((size, size, 3), 200, dtype=np.uint8)
        side = int(rng.randint(16, 28))
        x = int(rng.randint(0, size - side))
        y = int(rng.randint(0, size - side))
        pixels[y:y + side, x:x + side] = [220, 20, 20]

        name = f'image_{i:03d}.png'
        Image.fromarray(pixels).save(image_dir / name)

        # Every third image also has a "car"
        car = [[2.0, 2.0, 10.0, 8.0]] if i % 3 == 0 else []
        records.append({
            'imageFilename': f'images/{name}',
            'stopSign': [[float(x), float(y), float(side), float(side)]],
            'carRear': car,
        })

    path = root / 'ground_truth.json'
    with open(path, 'w') as f:
        json.dump(records, f)
    return path


@pytest.fixture
def sign_data(tmp_path):
    return write_sign_images(tmp_path), tmp_path
