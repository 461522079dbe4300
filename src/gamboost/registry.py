"""
Name-based construction of trainers and loading of persisted predictors.

Both tables are plain dicts filled at import time.
"""

from typing import Callable, Dict, Union, BinaryIO

from .exceptions import VersionError
from .objectives import ObjectiveFunction
from .predictor import GamPredictor, MODEL_SIGNATURE
from .trainer import BoostingTrainer


def _regression_gam_trainer(loss: str = "l2", **params) -> BoostingTrainer:
    return BoostingTrainer(objective=ObjectiveFunction(loss), **params)


_TRAINERS: Dict[str, Callable[..., BoostingTrainer]] = {
    "gamr": _regression_gam_trainer,
    "RegressionGamTrainer": _regression_gam_trainer,
}

_LOADERS: Dict[bytes, Callable[[bytes], GamPredictor]] = {
    MODEL_SIGNATURE: GamPredictor.from_bytes,
}


def create_trainer(name: str, **params) -> BoostingTrainer:
    """
    Build a trainer by name.

    Raises:
        KeyError: If no trainer is registered under `name`.
    """
    if name not in _TRAINERS:
        raise KeyError(f"Unknown trainer: {name}")
    return _TRAINERS[name](**params)


def load_model(source: Union[str, BinaryIO]) -> GamPredictor:
    """
    Load a persisted model, dispatching on its 8-byte signature.

    Raises:
        VersionError: If no loader is registered for the stored signature.
    """
    if hasattr(source, "read"):
        payload = source.read()
    else:
        with open(source, "rb") as fh:
            payload = fh.read()

    signature = bytes(payload[:len(MODEL_SIGNATURE)])
    loader = _LOADERS.get(signature)
    if loader is None:
        raise VersionError(f"No model loader registered for signature {signature!r}")
    return loader(payload)


def available_trainers() -> list:
    return sorted(_TRAINERS)
