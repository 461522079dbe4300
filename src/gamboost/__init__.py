"""
Generalized Additive Models for regression, fitted by gradient boosting
over per-feature value bins.

The fitted predictor scores an input as a global mean effect plus one
independent, bin-indexed contribution per feature.
"""

from .exceptions import GamError, ConfigError, LabelTypeError, DimensionError, VersionError
from .objectives import ObjectiveFunction, LossKind
from .pruning import PruningEvaluator, PruningMetric
from .data import LabeledRows, FeatureBinner, BinnedDataset, check_regression_label
from .trainer import BoostingTrainer, GamDefaults
from .predictor import GamPredictor
from .registry import create_trainer, load_model

__version__ = "0.1.0"
__all__ = [
    "GamError", "ConfigError", "LabelTypeError", "DimensionError", "VersionError",
    "ObjectiveFunction", "LossKind",
    "PruningEvaluator", "PruningMetric",
    "LabeledRows", "FeatureBinner", "BinnedDataset", "check_regression_label",
    "BoostingTrainer", "GamDefaults",
    "GamPredictor",
    "create_trainer", "load_model",
]
