"""
Row sources, label validation, and feature binning.

These are the collaborators around the boosting core: they turn a labeled
(optionally weighted) table into per-feature bin indices, and supply the
boundary lookup that the predictor reuses at scoring time.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import numpy as np
import pandas as pd
from pandas.api import types as ptypes

from .exceptions import ConfigError, LabelTypeError

logger = logging.getLogger(__name__)


def check_regression_label(labels) -> np.ndarray:
    """
    Validate that `labels` holds exactly one real scalar per row.

    Accepts 1-D arrays, single-column 2-D arrays, Series and one-column
    DataFrames with a numeric (non-boolean, non-complex) dtype.

    Returns
    -------
    labels : np.ndarray, shape (n,), float64

    Raises
    ------
    LabelTypeError
        If the label is vector-valued or not a real number type.
    ValueError
        If any label is NaN or infinite.
    """
    if isinstance(labels, pd.DataFrame):
        if labels.shape[1] != 1:
            raise LabelTypeError(
                f"Label must be a single scalar column, got {labels.shape[1]} columns"
            )
        labels = labels.iloc[:, 0]

    arr = labels.to_numpy() if isinstance(labels, pd.Series) else np.asarray(labels)
    if arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr.ravel()
    if arr.ndim != 1:
        raise LabelTypeError(f"Label must be a scalar per row, got array of shape {arr.shape}")

    dtype = arr.dtype
    if (not ptypes.is_numeric_dtype(dtype)
            or ptypes.is_bool_dtype(dtype)
            or ptypes.is_complex_dtype(dtype)):
        raise LabelTypeError(f"Label must be a real scalar type, got dtype {dtype}")

    arr = arr.astype(np.float64)
    if not np.all(np.isfinite(arr)):
        raise ValueError("Label contains NaN or infinite values")
    return arr


def _check_weights(weights, n_rows: int) -> np.ndarray:
    if weights is None:
        return np.ones(n_rows, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64).ravel()
    if weights.shape[0] != n_rows:
        raise ValueError(f"Expected {n_rows} weights, got {weights.shape[0]}")
    if np.any(weights < 0) or not np.all(np.isfinite(weights)):
        raise ValueError("Weights must be finite and non-negative")
    return weights


@dataclass
class LabeledRows:
    """
    A fully materialized labeled row source.

    Labels are kept as given; they are validated by `check_regression_label`
    when a trainer consumes the rows.
    """
    features: np.ndarray
    labels: object
    weights: Optional[np.ndarray] = None
    feature_names: Optional[List[str]] = None

    def __post_init__(self):
        self.features = np.asarray(self.features, dtype=np.float64)
        if self.features.ndim == 1:
            self.features = self.features.reshape(-1, 1)
        if self.features.ndim != 2:
            raise ValueError(f"Features must be 2-D, got shape {self.features.shape}")
        if np.ndim(self.labels) == 0:
            raise LabelTypeError(
                f"Labels must be a sequence of {self.features.shape[0]} values, "
                f"got scalar {type(self.labels).__name__}"
            )
        n_labels = len(self.labels)
        if n_labels != self.features.shape[0]:
            raise ValueError(
                f"Features and labels have incompatible lengths: "
                f"{self.features.shape[0]} vs {n_labels}"
            )
        if self.weights is not None:
            self.weights = _check_weights(self.weights, self.features.shape[0])

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        label_column: str = "Label",
        weight_column: Optional[str] = None,
        feature_columns: Optional[Sequence[str]] = None
    ) -> "LabeledRows":
        """Build rows from a DataFrame; feature columns default to all remaining columns."""
        if label_column not in frame.columns:
            raise KeyError(f"Label column {label_column!r} not found")
        if feature_columns is None:
            skip = {label_column, weight_column}
            feature_columns = [c for c in frame.columns if c not in skip]
        feature_columns = list(feature_columns)

        weights = frame[weight_column].to_numpy() if weight_column is not None else None
        return cls(
            features=frame[feature_columns].to_numpy(dtype=np.float64),
            labels=frame[label_column],
            weights=weights,
            feature_names=[str(c) for c in feature_columns],
        )

    @property
    def n_rows(self) -> int:
        return self.features.shape[0]

    @property
    def n_features(self) -> int:
        return self.features.shape[1]


def bin_index(upper_bounds: np.ndarray, values) -> np.ndarray:
    """
    Bin of each value: the first bin whose upper bound is >= the value.

    The last bound is +inf, so every finite value lands in range; NaN is
    routed to the last bin.
    """
    idx = np.searchsorted(upper_bounds, values, side="left")
    return np.minimum(idx, len(upper_bounds) - 1)


class FeatureBinner:
    """
    Quantizes each feature column into at most `max_bins` bins.

    Columns with few distinct values get one bin per value (bounds at the
    midpoints); others are cut at evenly spaced quantiles. Columns that
    collapse to a single bin are left out of `feature_map_`.

    Parameters
    ----------
    max_bins : int, default=255
        Per-feature bin cap, must be > 1.
    """

    def __init__(self, max_bins: int = 255):
        if isinstance(max_bins, bool) or not isinstance(max_bins, (int, np.integer)) or max_bins <= 1:
            raise ConfigError(f"max_bins must be an integer > 1, got {max_bins!r}")
        self.max_bins = int(max_bins)
        self.upper_bounds_: List[np.ndarray] = []
        self.feature_map_: Optional[np.ndarray] = None
        self.input_length_: Optional[int] = None

    def _find_bounds(self, column: np.ndarray) -> np.ndarray:
        values = column[~np.isnan(column)]
        distinct = np.unique(values)
        if distinct.size <= 1:
            return np.array([np.inf])
        if distinct.size <= self.max_bins:
            cuts = (distinct[:-1] + distinct[1:]) / 2.0
        else:
            quantiles = np.linspace(0.0, 1.0, self.max_bins + 1)[1:-1]
            cuts = np.unique(np.quantile(values, quantiles))
            cuts = cuts[cuts < distinct[-1]]
        return np.append(cuts, np.inf)

    def fit(self, X: np.ndarray) -> "FeatureBinner":
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(f"X must be 2-D, got shape {X.shape}")
        self.input_length_ = X.shape[1]
        self.upper_bounds_ = [self._find_bounds(X[:, j]) for j in range(X.shape[1])]
        self.feature_map_ = np.array(
            [j for j, bounds in enumerate(self.upper_bounds_) if len(bounds) > 1],
            dtype=np.int64
        )
        dropped = self.input_length_ - len(self.feature_map_)
        if dropped:
            logger.info(f"{dropped} of {self.input_length_} features have a single bin and are unused")
        return self

    def _check_fitted(self):
        if self.feature_map_ is None:
            raise RuntimeError("FeatureBinner is not fitted")

    def transform(self, X: np.ndarray) -> np.ndarray:
        """Bin indices of shape (n_rows, n_used_features) for the mapped columns."""
        self._check_fitted()
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2 or X.shape[1] != self.input_length_:
            raise ValueError(
                f"Expected X with {self.input_length_} columns, got shape {X.shape}"
            )
        bins = np.empty((X.shape[0], len(self.feature_map_)), dtype=np.int64)
        for f, column in enumerate(self.feature_map_):
            bins[:, f] = bin_index(self.upper_bounds_[column], X[:, column])
        return bins

    def used_upper_bounds(self) -> List[np.ndarray]:
        """Bin upper bounds for each mapped feature, in feature-map order."""
        self._check_fitted()
        return [self.upper_bounds_[column] for column in self.feature_map_]


@dataclass
class BinnedDataset:
    """Per-row bin indices for each used feature, with labels and weights."""
    bins: np.ndarray
    labels: np.ndarray
    weights: np.ndarray
    feature_map: np.ndarray
    upper_bounds: List[np.ndarray] = field(default_factory=list)
    input_length: int = 0

    @property
    def n_rows(self) -> int:
        return self.bins.shape[0]

    @property
    def n_features(self) -> int:
        return self.bins.shape[1]

    @property
    def bin_counts(self) -> List[int]:
        return [len(bounds) for bounds in self.upper_bounds]

    @classmethod
    def from_rows(cls, rows: LabeledRows, binner: FeatureBinner) -> "BinnedDataset":
        """Bin `rows` with an already fitted binner."""
        labels = check_regression_label(rows.labels)
        return cls(
            bins=binner.transform(rows.features),
            labels=labels,
            weights=_check_weights(rows.weights, rows.n_rows),
            feature_map=binner.feature_map_.copy(),
            upper_bounds=binner.used_upper_bounds(),
            input_length=binner.input_length_,
        )
