"""
Regression experiment on California Housing dataset.

Fits a bin-boosted GAM, tracks the validation curve used for pruning, and
plots the learned per-feature shape functions.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from sklearn.datasets import fetch_california_housing
from sklearn.model_selection import train_test_split
from sklearn.metrics import mean_squared_error

from gamboost.data import LabeledRows
from gamboost.predictor import GamPredictor
from gamboost.trainer import BoostingTrainer
from gamboost.utils import compute_metrics_regression

OUT_DIR = Path(__file__).parent

# Set style
plt.style.use('seaborn-v0_8-darkgrid')
np.random.seed(42)


def load_and_prepare_data():
    """Load California Housing dataset and split."""
    print("Loading California Housing dataset...")
    data = fetch_california_housing()
    X, y = data.data, data.target

    # Split 80/20
    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=0.2, random_state=42
    )

    # Further split train into train/val for pruning
    X_train, X_val, y_train, y_val = train_test_split(
        X_train, y_train, test_size=0.2, random_state=42
    )

    print(f"Train: {X_train.shape}, Val: {X_val.shape}, Test: {X_test.shape}")

    return list(data.feature_names), X_train, X_val, X_test, y_train, y_val, y_test


def experiment_learning_rate(X_train, X_val, X_test, y_train, y_val, y_test):
    """Experiment: effect of learning rate on the pruning curve."""
    print("\n" + "="*60)
    print("Experiment 1: Effect of learning_rate")
    print("="*60)

    learning_rates = [0.01, 0.05, 0.2]
    results = []

    fig, ax = plt.subplots(figsize=(10, 6))

    for lr in learning_rates:
        print(f"\nFitting with learning_rate={lr}...")

        trainer = BoostingTrainer(num_iterations=300, learning_rate=lr, max_bins=64)
        predictor = trainer.train(LabeledRows(X_train, y_train), LabeledRows(X_val, y_val))

        test_mse = mean_squared_error(y_test, predictor.predict(X_test))
        print(f"Best iteration: {trainer.best_iteration_}, Test MSE: {test_mse:.6f}")

        results.append({
            'learning_rate': lr,
            'best_iteration': trainer.best_iteration_,
            'test_mse': test_mse
        })

        losses = [loss for _, loss in trainer.pruning_history_]
        ax.plot(range(1, len(losses) + 1), losses, label=f'lr={lr}', linewidth=2)
        ax.axvline(trainer.best_iteration_, linestyle='--', alpha=0.4)

    ax.set_xlabel('Iteration')
    ax.set_ylabel('Validation MSE')
    ax.set_title('Effect of Learning Rate on Validation Loss')
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(OUT_DIR / 'regression_learning_rate.png', dpi=150)
    print("\nSaved plot: regression_learning_rate.png")

    return pd.DataFrame(results)


def experiment_max_bins(X_train, X_val, X_test, y_train, y_val, y_test):
    """Experiment: effect of feature resolution (max_bins)."""
    print("\n" + "="*60)
    print("Experiment 2: Effect of max_bins")
    print("="*60)

    bin_caps = [8, 32, 255]
    results = []

    for max_bins in bin_caps:
        print(f"\nFitting with max_bins={max_bins}...")

        trainer = BoostingTrainer(num_iterations=300, learning_rate=0.05, max_bins=max_bins)
        predictor = trainer.train(LabeledRows(X_train, y_train), LabeledRows(X_val, y_val))

        test_mse = mean_squared_error(y_test, predictor.predict(X_test))
        print(f"Test MSE: {test_mse:.6f}")

        results.append({
            'max_bins': max_bins,
            'best_iteration': trainer.best_iteration_,
            'test_mse': test_mse
        })

    return pd.DataFrame(results)


def plot_shape_functions(predictor, feature_names, X_train):
    """Plot each feature's bin effects against its bin upper bounds."""
    n = predictor.num_shape_functions
    n_cols = 4
    n_rows = int(np.ceil(n / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(16, 3.5 * n_rows), squeeze=False)

    for f, column in enumerate(predictor.feature_map):
        ax = axes[f // n_cols][f % n_cols]
        bounds = predictor.get_bin_upper_bounds(f).copy()
        # The last bound is +inf; draw it at the observed maximum.
        bounds[-1] = X_train[:, column].max()
        ax.step(bounds, predictor.get_bin_effects(f), where='post', linewidth=2)
        ax.set_title(feature_names[column])
        ax.grid(True, alpha=0.3)

    for f in range(n, n_rows * n_cols):
        axes[f // n_cols][f % n_cols].axis('off')

    plt.tight_layout()
    plt.savefig(OUT_DIR / 'regression_shape_functions.png', dpi=150)
    print("\nSaved plot: regression_shape_functions.png")


def final_model_and_summary(feature_names, X_train, X_val, X_test, y_train, y_val, y_test):
    """Train final model, check persistence, and plot shape functions."""
    print("\n" + "="*60)
    print("Final Model")
    print("="*60)

    trainer = BoostingTrainer(num_iterations=500, learning_rate=0.05, max_bins=64, n_jobs=4,
                              verbose=True)
    predictor = trainer.train(LabeledRows(X_train, y_train), LabeledRows(X_val, y_val))

    model_path = OUT_DIR / 'california_gam.bin'
    predictor.save(str(model_path))
    reloaded = GamPredictor.load(str(model_path))
    assert np.array_equal(reloaded.predict(X_test), predictor.predict(X_test))

    metrics = compute_metrics_regression(y_test, reloaded.predict(X_test))
    test_mse = metrics["mse"]
    print(f"\nBest iteration: {trainer.best_iteration_}")
    print(f"Final Test MSE:  {metrics['mse']:.6f}")
    print(f"Final Test RMSE: {metrics['rmse']:.6f}")
    print(f"Final Test MAE:  {metrics['mae']:.6f}")

    plot_shape_functions(predictor, feature_names, X_train)
    predictor.summary().to_csv(OUT_DIR / 'regression_shape_functions.csv', index=False)

    return test_mse


def main():
    """Run all regression experiments."""
    print("="*60)
    print("GAM Boosting Regression Experiments")
    print("California Housing Dataset")
    print("="*60)

    feature_names, X_train, X_val, X_test, y_train, y_val, y_test = load_and_prepare_data()

    results_lr = experiment_learning_rate(X_train, X_val, X_test, y_train, y_val, y_test)
    results_bins = experiment_max_bins(X_train, X_val, X_test, y_train, y_val, y_test)

    results_lr.to_csv(OUT_DIR / 'regression_learning_rate_results.csv', index=False)
    results_bins.to_csv(OUT_DIR / 'regression_max_bins_results.csv', index=False)

    print("\n" + "="*60)
    print("Results Summary")
    print("="*60)
    print("\nEffect of learning_rate:")
    print(results_lr.to_string(index=False))
    print("\nEffect of max_bins:")
    print(results_bins.to_string(index=False))

    final_model_and_summary(feature_names, X_train, X_val, X_test, y_train, y_val, y_test)

    print("\n" + "="*60)
    print("Regression Experiments Complete!")
    print("="*60)


if __name__ == "__main__":
    main()
