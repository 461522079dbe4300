"""Error types raised by gamboost."""


class GamError(Exception):
    """Base class for all gamboost errors."""


class ConfigError(GamError, ValueError):
    """Invalid hyperparameter, loss kind or pruning metric."""


class LabelTypeError(GamError, TypeError):
    """Label column is not a scalar real value."""


class DimensionError(GamError, ValueError):
    """Feature vector length does not match the predictor's input length."""


class VersionError(GamError, ValueError):
    """Persisted model has a foreign signature or an unreadable version."""
