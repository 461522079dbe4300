"""
Objective functions: per-example pseudo-residuals for the boosting loop.
"""

from enum import Enum
from typing import Optional, Union
import numpy as np

from .exceptions import ConfigError
from .utils import l1_negative_gradient, l2_negative_gradient


class LossKind(Enum):
    """Regression loss driving the gradient computation."""
    L1 = "l1"
    L2 = "l2"

    @classmethod
    def parse(cls, value: Union["LossKind", str]) -> "LossKind":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.lower())
            except ValueError:
                pass
        raise ConfigError(f"Unknown loss kind {value!r}; expected one of 'l1', 'l2'")


_GRADIENTS = {
    LossKind.L1: l1_negative_gradient,
    LossKind.L2: l2_negative_gradient,
}


class ObjectiveFunction:
    """
    Computes pseudo-residuals from current predictions and true labels.

    L2: r_i = y_i - f_i.  L1: r_i = sign(y_i - f_i).

    Weights are not folded into the residuals; the trainer applies them when
    averaging residuals per bin.

    Parameters
    ----------
    loss : LossKind or str, default="l2"
        Loss kind. Raises ConfigError if unrecognised.
    """

    def __init__(self, loss: Union[LossKind, str] = LossKind.L2):
        self.loss = LossKind.parse(loss)

    def __repr__(self) -> str:
        return f"ObjectiveFunction(loss={self.loss.value!r})"

    def compute_gradients(
        self,
        predictions: np.ndarray,
        labels: np.ndarray,
        weights: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """
        Pseudo-residual per example.

        Parameters
        ----------
        predictions : np.ndarray, shape (n,)
            Current model output.
        labels : np.ndarray, shape (n,)
            True targets.
        weights : np.ndarray, shape (n,), optional
            Example weights; only checked for length here.

        Returns
        -------
        gradients : np.ndarray, shape (n,)
        """
        predictions = np.asarray(predictions, dtype=np.float64)
        labels = np.asarray(labels, dtype=np.float64)

        if predictions.shape != labels.shape or predictions.ndim != 1:
            raise ValueError(
                f"predictions and labels must be 1-D of equal length: "
                f"{predictions.shape} vs {labels.shape}"
            )
        if predictions.shape[0] == 0:
            raise ValueError("Cannot compute gradients for zero examples")
        if weights is not None and np.shape(weights) != labels.shape:
            raise ValueError(
                f"weights must match labels: {np.shape(weights)} vs {labels.shape}"
            )

        gradient_fn = _GRADIENTS.get(self.loss)
        if gradient_fn is None:
            raise ConfigError(f"No gradient defined for loss kind {self.loss!r}")
        return gradient_fn(labels, predictions)
