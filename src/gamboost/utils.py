"""
Utility functions for GAM boosting: loss functions, pseudo-residuals, and metrics.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
- Lou, Y., Caruana, R., & Gehrke, J. (2012). Intelligible models for classification
  and regression. KDD.
"""

from typing import Optional
import numpy as np
from sklearn.metrics import mean_squared_error, mean_absolute_error


# ===========================
# Loss Functions and Gradients
# ===========================

def l2_loss(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    sample_weight: Optional[np.ndarray] = None
) -> float:
    """Weighted mean squared error: Σ w_i (y_i - f_i)^2 / Σ w_i."""
    return float(mean_squared_error(y_true, y_pred, sample_weight=sample_weight))


def l1_loss(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    sample_weight: Optional[np.ndarray] = None
) -> float:
    """Weighted mean absolute error: Σ w_i |y_i - f_i| / Σ w_i."""
    return float(mean_absolute_error(y_true, y_pred, sample_weight=sample_weight))


def l2_negative_gradient(y_true: np.ndarray, y_pred: np.ndarray) -> np.ndarray:
    """
    Negative gradient (pseudo-residuals) for squared error.

    For L(y, f) = 0.5 * (y - f)^2, the negative gradient is:
    -∂L/∂f = y - f (the residuals).
    """
    return y_true - y_pred


def l1_negative_gradient(y_true: np.ndarray, y_pred: np.ndarray) -> np.ndarray:
    """
    Negative gradient for absolute error.

    For L(y, f) = |y - f|, -∂L/∂f = sign(y - f), taken as 0 where y == f.
    """
    return np.sign(y_true - y_pred)


def weighted_bin_means(
    bins: np.ndarray,
    values: np.ndarray,
    weights: np.ndarray,
    n_bins: int,
    min_rows: int = 1
) -> np.ndarray:
    """
    Weighted average of `values` per bin (a one-dimensional histogram regression).

    Bins with zero total weight, or fewer than `min_rows` rows, get 0.
    """
    sum_wv = np.bincount(bins, weights=weights * values, minlength=n_bins)
    sum_w = np.bincount(bins, weights=weights, minlength=n_bins)
    counts = np.bincount(bins, minlength=n_bins)

    means = np.zeros(n_bins, dtype=np.float64)
    ok = (sum_w > 0) & (counts >= min_rows)
    means[ok] = sum_wv[ok] / sum_w[ok]
    return means


# ===========================
# Metrics
# ===========================

def compute_metrics_regression(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    sample_weight: Optional[np.ndarray] = None
) -> dict:
    """Compute regression metrics."""
    mse = l2_loss(y_true, y_pred, sample_weight)
    rmse = np.sqrt(mse)
    mae = l1_loss(y_true, y_pred, sample_weight)

    return {
        "mse": mse,
        "rmse": rmse,
        "mae": mae
    }
