"""
Additive GAM predictor: scoring and versioned binary persistence.

Score(x) = mean_effect + Σ_f bin_effects[f][bin_f(x[feature_map[f]])]

File layout (little-endian):
    signature       8 bytes, b"GAM REGP"
    versions        3 x uint32: written, readable, we-can-read-back
    mean_effect     float64
    input_length    int32
    n_features      int32
    feature_map     n_features x int32
    per feature     int32 bin_count, bin_count x float64 effects,
                    bin_count x float64 bin upper bounds
"""

import io
import logging
import struct
from typing import BinaryIO, List, Sequence, Union
import numpy as np
import pandas as pd

from .data import bin_index
from .exceptions import DimensionError, VersionError

logger = logging.getLogger(__name__)

MODEL_SIGNATURE = b"GAM REGP"
VER_WRITTEN_CUR = 0x00010001
VER_READABLE_CUR = 0x00010001
VER_WE_CAN_READ_BACK = 0x00010001

_HEADER = struct.Struct("<8sIII")


def _frozen(values, dtype) -> np.ndarray:
    arr = np.array(values, dtype=dtype, copy=True)
    arr.flags.writeable = False
    return arr


class _Reader:
    """Bounds-checked sequential reader over a model payload."""

    def __init__(self, payload: bytes):
        self._buf = memoryview(payload)
        self._pos = 0

    def take(self, n: int) -> memoryview:
        if n < 0 or self._pos + n > len(self._buf):
            raise VersionError(
                f"Truncated model: need {n} bytes at offset {self._pos}, "
                f"only {len(self._buf) - self._pos} left"
            )
        chunk = self._buf[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def unpack(self, fmt: str):
        s = struct.Struct(fmt)
        return s.unpack(self.take(s.size))

    def float64s(self, n: int) -> np.ndarray:
        if n == 0:
            return np.empty(0, dtype=np.float64)
        return np.frombuffer(self.take(8 * n), dtype="<f8").astype(np.float64)

    def int32s(self, n: int) -> np.ndarray:
        if n == 0:
            return np.empty(0, dtype=np.int64)
        return np.frombuffer(self.take(4 * n), dtype="<i4").astype(np.int64)

    @property
    def remaining(self) -> int:
        return len(self._buf) - self._pos


class GamPredictor:
    """
    Immutable additive regression model over binned features.

    Parameters
    ----------
    mean_effect : float
        Global intercept.
    bin_effects : sequence of array-like
        One effect table per used feature, indexed by bin.
    bin_upper_bounds : sequence of array-like
        Bin upper bounds per used feature, same lengths as `bin_effects`.
    feature_map : sequence of int
        Original column index of each used feature.
    input_length : int
        Expected length of scored feature vectors.
    """

    def __init__(
        self,
        mean_effect: float,
        bin_effects: Sequence[Sequence[float]],
        bin_upper_bounds: Sequence[Sequence[float]],
        feature_map: Sequence[int],
        input_length: int
    ):
        if not (len(bin_effects) == len(bin_upper_bounds) == len(feature_map)):
            raise ValueError(
                f"bin_effects ({len(bin_effects)}), bin_upper_bounds ({len(bin_upper_bounds)}) "
                f"and feature_map ({len(feature_map)}) must have equal length"
            )
        self._mean_effect = float(mean_effect)
        self._input_length = int(input_length)
        self._feature_map = _frozen(feature_map, np.int64)
        self._bin_effects = tuple(_frozen(e, np.float64) for e in bin_effects)
        self._upper_bounds = tuple(_frozen(b, np.float64) for b in bin_upper_bounds)

        for f, (effects, bounds) in enumerate(zip(self._bin_effects, self._upper_bounds)):
            if effects.ndim != 1 or effects.shape != bounds.shape or effects.size == 0:
                raise ValueError(
                    f"Feature {f}: {effects.shape} effects vs {bounds.shape} bin bounds"
                )
        if self._feature_map.size and (
                self._feature_map.min() < 0 or self._feature_map.max() >= self._input_length):
            raise ValueError(
                f"feature_map entries must lie in [0, {self._input_length}), "
                f"got {self._feature_map.tolist()}"
            )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def mean_effect(self) -> float:
        return self._mean_effect

    @property
    def input_length(self) -> int:
        return self._input_length

    @property
    def feature_map(self) -> np.ndarray:
        return self._feature_map

    @property
    def bin_effects(self) -> tuple:
        return self._bin_effects

    @property
    def num_shape_functions(self) -> int:
        return len(self._bin_effects)

    def get_bin_effects(self, feature: int) -> np.ndarray:
        """Effect table of the `feature`-th used feature."""
        return self._bin_effects[feature]

    def get_bin_upper_bounds(self, feature: int) -> np.ndarray:
        return self._upper_bounds[feature]

    def summary(self) -> pd.DataFrame:
        """One row per (feature, bin) with its upper bound and effect."""
        records = []
        for f, column in enumerate(self._feature_map):
            for b, (bound, effect) in enumerate(zip(self._upper_bounds[f], self._bin_effects[f])):
                records.append({
                    "feature": int(column),
                    "bin": b,
                    "upper_bound": float(bound),
                    "effect": float(effect),
                })
        return pd.DataFrame.from_records(
            records, columns=["feature", "bin", "upper_bound", "effect"]
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _check_matrix(self, X) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise DimensionError(f"Expected a 2-D feature matrix, got shape {X.shape}")
        if X.shape[1] != self._input_length:
            raise DimensionError(
                f"Expected feature vectors of length {self._input_length}, got {X.shape[1]}"
            )
        return X

    def _contributions(self, X: np.ndarray) -> np.ndarray:
        out = np.empty((X.shape[0], len(self._bin_effects)), dtype=np.float64)
        for f, column in enumerate(self._feature_map):
            bins = bin_index(self._upper_bounds[f], X[:, column])
            out[:, f] = self._bin_effects[f][bins]
        return out

    def predict(self, X) -> np.ndarray:
        """
        Score every row of a feature matrix.

        Parameters
        ----------
        X : array-like, shape (n, input_length)

        Returns
        -------
        scores : np.ndarray, shape (n,)
        """
        X = self._check_matrix(X)
        scores = np.full(X.shape[0], self._mean_effect)
        for f, column in enumerate(self._feature_map):
            bins = bin_index(self._upper_bounds[f], X[:, column])
            scores += self._bin_effects[f][bins]
        return scores

    def score(self, feature_vector) -> float:
        """Score a single feature vector of length `input_length`."""
        x = np.asarray(feature_vector, dtype=np.float64)
        if x.ndim != 1:
            raise DimensionError(f"Expected a 1-D feature vector, got shape {x.shape}")
        if x.shape[0] != self._input_length:
            raise DimensionError(
                f"Expected feature vector of length {self._input_length}, got {x.shape[0]}"
            )
        return float(self.predict(x[np.newaxis, :])[0])

    def feature_contributions(self, feature_vector) -> np.ndarray:
        """Per used feature, the bin effect selected by `feature_vector`."""
        x = np.asarray(feature_vector, dtype=np.float64)
        if x.ndim != 1 or x.shape[0] != self._input_length:
            raise DimensionError(
                f"Expected feature vector of length {self._input_length}, got shape {x.shape}"
            )
        return self._contributions(x[np.newaxis, :])[0]

    def predict_frame(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Score the rows of a DataFrame into a single `Score` column."""
        return pd.DataFrame({"Score": self.predict(frame.to_numpy(dtype=np.float64))},
                            index=frame.index)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        """Serialize with the current writer version."""
        buf = io.BytesIO()
        buf.write(_HEADER.pack(MODEL_SIGNATURE, VER_WRITTEN_CUR, VER_READABLE_CUR,
                               VER_WE_CAN_READ_BACK))
        buf.write(struct.pack("<dii", self._mean_effect, self._input_length,
                              len(self._feature_map)))
        buf.write(self._feature_map.astype("<i4").tobytes())
        for effects, bounds in zip(self._bin_effects, self._upper_bounds):
            buf.write(struct.pack("<i", effects.size))
            buf.write(effects.astype("<f8").tobytes())
            buf.write(bounds.astype("<f8").tobytes())
        return buf.getvalue()

    @staticmethod
    def check_header(payload: bytes) -> None:
        """Raise VersionError unless `payload` starts with a readable GAM header."""
        if len(payload) < _HEADER.size:
            raise VersionError(f"Model header needs {_HEADER.size} bytes, got {len(payload)}")
        signature, ver_written, ver_readable, _ = _HEADER.unpack_from(payload)
        if signature != MODEL_SIGNATURE:
            raise VersionError(
                f"Model signature mismatch: expected {MODEL_SIGNATURE!r}, got {signature!r}"
            )
        if ver_written < VER_WE_CAN_READ_BACK:
            raise VersionError(
                f"Model version 0x{ver_written:08X} is older than the oldest readable "
                f"version 0x{VER_WE_CAN_READ_BACK:08X}"
            )
        if ver_readable > VER_WRITTEN_CUR:
            raise VersionError(
                f"Model requires reader version 0x{ver_readable:08X}, this reader is "
                f"0x{VER_WRITTEN_CUR:08X}"
            )

    @classmethod
    def from_bytes(cls, payload: bytes) -> "GamPredictor":
        """Deserialize a predictor; no partial model is ever returned."""
        cls.check_header(payload)
        reader = _Reader(payload)
        reader.take(_HEADER.size)

        mean_effect, input_length, n_features = reader.unpack("<dii")
        if input_length < 0 or n_features < 0:
            raise VersionError(
                f"Corrupt model body: input_length={input_length}, n_features={n_features}"
            )
        feature_map = reader.int32s(n_features)

        effects: List[np.ndarray] = []
        bounds: List[np.ndarray] = []
        for f in range(n_features):
            (bin_count,) = reader.unpack("<i")
            if bin_count <= 0:
                raise VersionError(f"Corrupt model body: feature {f} has {bin_count} bins")
            effects.append(reader.float64s(bin_count))
            bounds.append(reader.float64s(bin_count))

        if reader.remaining:
            raise VersionError(f"{reader.remaining} unexpected trailing bytes in model")

        try:
            model = cls(mean_effect, effects, bounds, feature_map, input_length)
        except ValueError as exc:
            raise VersionError(f"Corrupt model body: {exc}") from exc
        logger.debug(f"Loaded GAM predictor with {n_features} shape functions")
        return model

    def save(self, target: Union[str, BinaryIO]) -> None:
        """Write the model to a path or a binary file object."""
        payload = self.to_bytes()
        if hasattr(target, "write"):
            target.write(payload)
        else:
            with open(target, "wb") as fh:
                fh.write(payload)
        logger.debug(f"Saved GAM predictor ({len(payload)} bytes)")

    @classmethod
    def load(cls, source: Union[str, BinaryIO]) -> "GamPredictor":
        """Read a model from a path or a binary file object."""
        if hasattr(source, "read"):
            payload = source.read()
        else:
            with open(source, "rb") as fh:
                payload = fh.read()
        return cls.from_bytes(payload)

    def __repr__(self) -> str:
        return (f"GamPredictor(mean_effect={self._mean_effect:.6g}, "
                f"num_shape_functions={self.num_shape_functions}, "
                f"input_length={self._input_length})")
