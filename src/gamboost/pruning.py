"""
Validation-loss tracking and best-iteration selection.

The evaluator is purely observational: it records one loss per completed
boosting round and reports the earliest round with the lowest loss.
"""

from enum import IntEnum
from typing import List, Optional, Tuple, Union
import numpy as np

from .exceptions import ConfigError
from .utils import l1_loss, l2_loss


class PruningMetric(IntEnum):
    """Validation metric used for pruning (1: L1, 2: L2)."""
    L1 = 1
    L2 = 2

    @classmethod
    def parse(cls, value: Union["PruningMetric", int, str]) -> "PruningMetric":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.upper()
            if key in cls.__members__:
                return cls[key]
        elif isinstance(value, (int, np.integer)) and not isinstance(value, bool):
            try:
                return cls(int(value))
            except ValueError:
                pass
        raise ConfigError(f"Unknown pruning metric {value!r}; expected L1 (1) or L2 (2)")


class PruningEvaluator:
    """
    Scores validation predictions and keeps the per-round loss history.

    Parameters
    ----------
    metric : PruningMetric, int or str, default=PruningMetric.L2
        Metric used by `evaluate` when none is given explicitly.

    Attributes
    ----------
    history : list of (int, float)
        (iteration, loss) pairs in recording order.
    """

    def __init__(self, metric: Union[PruningMetric, int, str] = PruningMetric.L2):
        self.metric = PruningMetric.parse(metric)
        self.history: List[Tuple[int, float]] = []
        self._best_index: Optional[int] = None

    def evaluate(
        self,
        predictions: np.ndarray,
        labels: np.ndarray,
        weights: Optional[np.ndarray] = None,
        metric: Optional[Union[PruningMetric, int, str]] = None
    ) -> float:
        """Weighted mean L1 or L2 loss of `predictions` against `labels`."""
        metric = self.metric if metric is None else PruningMetric.parse(metric)
        if metric == PruningMetric.L1:
            return l1_loss(labels, predictions, weights)
        return l2_loss(labels, predictions, weights)

    def record_and_get_best(self, iteration: int, loss: float) -> int:
        """Append (iteration, loss) and return the current best iteration."""
        self.history.append((iteration, float(loss)))
        last = len(self.history) - 1
        # Strict comparison keeps the earliest round on ties.
        if self._best_index is None or loss < self.history[self._best_index][1]:
            self._best_index = last
        return self.history[self._best_index][0]

    @property
    def best_iteration(self) -> Optional[int]:
        """Earliest iteration with the minimum recorded loss, or None if empty."""
        if self._best_index is None:
            return None
        return self.history[self._best_index][0]

    @property
    def best_loss(self) -> Optional[float]:
        """Loss recorded at `best_iteration`, or None if empty."""
        if self._best_index is None:
            return None
        return self.history[self._best_index][1]

    def __len__(self) -> int:
        return len(self.history)
