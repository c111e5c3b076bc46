"""
Installation Verification Script
=================================
Run this script to verify that all dependencies are correctly installed
and that the ground truth file and its images can be found.

Usage:
    python verify_installation.py [path/to/ground_truth.json] [data_root]
"""

import os
import sys


def check_import(module_name, package_name=None):
    """Check if a module can be imported."""
    if package_name is None:
        package_name = module_name

    try:
        __import__(module_name)
        print(f"✓ {package_name:20s} - OK")
        return True
    except ImportError as e:
        print(f"✗ {package_name:20s} - MISSING ({str(e)})")
        return False


def check_cuda():
    """Check CUDA availability."""
    import torch
    if torch.cuda.is_available():
        print(f"✓ {'CUDA':20s} - Available (GPU: {torch.cuda.get_device_name(0)})")
        print(f"  CUDA Version: {torch.version.cuda}")
        print(f"  Number of GPUs: {torch.cuda.device_count()}")
        return True
    print(f"⚠ {'CUDA':20s} - Not available (training will use the CPU and be slow)")
    return False


def check_torch_versions():
    """torchvision's detection models need torch >= 1.12."""
    import torch
    import torchvision
    print(f"  PyTorch version: {torch.__version__}")
    print(f"  torchvision version: {torchvision.__version__}")

    major, minor = (int(p) for p in torch.__version__.split('+')[0].split('.')[:2])
    if (major, minor) < (1, 12):
        print(f"  ⚠ Warning: PyTorch {torch.__version__} detected. Recommend >= 2.0.0")
        return False
    return True


def check_dataset(ground_truth_path="data/stopSignsAndCars.json", data_root="data"):
    """Check that the ground truth file loads and its images exist."""
    from ground_truth import load_ground_truth

    if not os.path.exists(ground_truth_path):
        print(f"✗ {'Ground truth':20s} - Not found at {ground_truth_path}")
        print("  Export the labeled images to this file (see ground_truth.load_ground_truth)")
        return False

    table = load_ground_truth(ground_truth_path, data_root=data_root)
    print(f"✓ {'Ground truth':20s} - {len(table)} images, classes: {table.class_names}")
    for class_name in table.class_names:
        print(f"  {class_name:12s}: {table.num_boxes(class_name)} boxes")

    missing = [p for p in table.image_filenames if not os.path.exists(p)]
    if missing:
        print(f"  ⚠ {len(missing)} image files are missing, e.g. {missing[0]}")
        return False
    print("  All image files found")
    return True


def main():
    """Main verification function."""
    print("=" * 80)
    print("Installation Verification")
    print("=" * 80)
    print()

    print("Checking Python version...")
    print(f"  Python {sys.version}")
    if sys.version_info < (3, 8):
        print("  ⚠ Warning: Python 3.8+ is recommended")
    print()

    print("Checking required packages...")
    all_ok = True

    packages = [
        ('torch', 'torch'),
        ('torchvision', 'torchvision'),
        ('PIL', 'Pillow'),
        ('numpy', 'numpy'),
        ('matplotlib', 'matplotlib'),
        ('yaml', 'PyYAML'),
        ('tqdm', 'tqdm'),
    ]

    for module, package in packages:
        if not check_import(module, package):
            all_ok = False

    if not all_ok:
        print("\n✗ Some packages are missing.")
        print("  Please run: pip install -e .")
        return

    print()
    print("Checking PyTorch and CUDA...")
    check_torch_versions()
    check_cuda()

    print()
    print("Checking dataset...")
    ground_truth_path = sys.argv[1] if len(sys.argv) > 1 else "data/stopSignsAndCars.json"
    data_root = sys.argv[2] if len(sys.argv) > 2 else "data"
    dataset_ok = check_dataset(ground_truth_path, data_root)

    print()
    print("=" * 80)
    print("✓ All required packages are installed!")
    if dataset_ok:
        print("  You can now run: python faster_rcnn.py --mode train")
    print("=" * 80)


if __name__ == '__main__':
    main()
