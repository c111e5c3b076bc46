"""
Example Training Scripts for Different Detection Scenarios
===========================================================
Shows how to train on different class columns of the stop sign and car data.
"""

from faster_rcnn import Config, train, test

AVAILABLE_CLASSES = ['stopSign', 'carRear', 'carFront']


def run_example(title, classes, epochs, learn_rates=None):
    print("\n" + "="*80)
    print(title)
    print("="*80)

    config = Config(classes=classes)
    for options in config.stage_options:
        options.max_epochs = epochs
    if learn_rates is not None:
        for options, lr in zip(config.stage_options, learn_rates):
            options.initial_learn_rate = lr
    config.model_name = "faster_rcnn_" + "_".join(classes)

    detector = train(config)
    print("\n✓ Training complete!")
    return config, detector


def example_1_stop_signs():
    """Example 1: Stop signs only"""
    return run_example("EXAMPLE 1: Training on Stop Signs", ['stopSign'], epochs=10)


def example_2_car_rear():
    """Example 2: Rear view of cars"""
    return run_example("EXAMPLE 2: Training on Car Rears", ['carRear'], epochs=10)


def example_3_car_front():
    """Example 3: Front view of cars"""
    return run_example("EXAMPLE 3: Training on Car Fronts", ['carFront'], epochs=10)


def example_4_all_classes():
    """Example 4: Every class; more classes need more epochs"""
    return run_example(
        "EXAMPLE 4: Training on ALL Classes", AVAILABLE_CLASSES, epochs=20,
        learn_rates=(1e-4, 1e-4, 1e-5, 1e-5)
    )


def custom_training(classes, epochs=10):
    """Custom training with specified classes"""
    return run_example(f"CUSTOM: Training on {classes}", classes, epochs=epochs)


if __name__ == '__main__':
    print("="*80)
    print("Faster R-CNN Training Examples")
    print("="*80)
    print("\nAvailable examples:")
    print("  1. Stop signs")
    print("  2. Car rears")
    print("  3. Car fronts")
    print("  4. ALL classes")
    print("  5. Custom (specify your own classes)")
    print()

    choice = input("Select example (1-5) or Enter for default (1): ").strip()

    if choice == '1' or choice == '':
        config, _ = example_1_stop_signs()
    elif choice == '2':
        config, _ = example_2_car_rear()
    elif choice == '3':
        config, _ = example_3_car_front()
    elif choice == '4':
        config, _ = example_4_all_classes()
    elif choice == '5':
        print(f"Available classes: {', '.join(AVAILABLE_CLASSES)}")
        classes_input = input("Classes (comma-separated): ").strip()
        classes = [c.strip() for c in classes_input.split(',') if c.strip()] or ['stopSign']

        epochs_input = input("Number of epochs per stage (default 10): ").strip()
        epochs = int(epochs_input) if epochs_input else 10

        config, _ = custom_training(classes, epochs)
    else:
        print("Invalid choice, running default (Example 1)")
        config, _ = example_1_stop_signs()

    answer = input("\nEvaluate on the test split now? (y/n): ").strip().lower()
    if answer == 'y':
        results = test(config, f'{config.checkpoint_dir}/{config.model_name}_detector.pth')
        print(f"  Average Precision: {results['average_precision']}")
