"""
Gradient boosting trainer for Generalized Additive Models.

Each round fits, for every feature independently, a one-dimensional histogram
regression of the pseudo-residuals on that feature's bins, and adds the
shrunken per-bin means to the feature's effect table:

1. Initialise: f_0 = weighted mean of y.
2. For r = 1 to R:
   a. Pseudo-residuals: g_i = -∂L/∂f (y_i - f(x_i) for L2, sign for L1).
   b. For each feature j and bin b: δ_jb = Σ_{i: bin_j(x_i)=b} w_i g_i / Σ w_i.
   c. Update: effects_j[b] += ν * δ_jb.
   d. Score the validation set and record the loss.
3. Keep the round with the lowest validation loss (earliest on ties).

No interaction terms are ever introduced: the model stays additive.

References:
- Lou, Y., Caruana, R., & Gehrke, J. (2012). Intelligible models for
  classification and regression. KDD.
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
"""

import logging
from typing import List, Optional, Union
import numpy as np
from joblib import Parallel, cpu_count, delayed

from .data import BinnedDataset, FeatureBinner, LabeledRows, check_regression_label
from .exceptions import ConfigError
from .objectives import ObjectiveFunction
from .predictor import GamPredictor
from .pruning import PruningEvaluator, PruningMetric
from .utils import l2_loss, weighted_bin_means

logger = logging.getLogger(__name__)


class GamDefaults:
    """Default hyperparameters. GAMs work best with a small learning rate."""
    NUM_ITERATIONS = 9500
    LEARNING_RATE = 0.002
    MAX_BINS = 255


def _feature_deltas(
    bins: np.ndarray,
    features: List[int],
    gradients: np.ndarray,
    weights: np.ndarray,
    bin_counts: List[int],
    min_rows: int
) -> List[np.ndarray]:
    """Per-bin weighted mean gradient for a disjoint subset of features."""
    return [
        weighted_bin_means(bins[:, f], gradients, weights, bin_counts[f], min_rows)
        for f in features
    ]


class BoostingTrainer:
    """
    Bin-wise gradient boosting trainer producing a GamPredictor.

    The prediction task is set by the injected objective; a regression
    trainer is a BoostingTrainer with an L2 (or L1) ObjectiveFunction.

    Parameters
    ----------
    objective : ObjectiveFunction, optional
        Pseudo-residual strategy. Defaults to L2 regression.
    num_iterations : int, default=9500
        Number of boosting rounds.
    learning_rate : float, default=0.002
        Shrinkage applied to every per-bin update.
    max_bins : int, default=255
        Maximum number of bins per feature.
    pruning_metric : PruningMetric, int or str, default=PruningMetric.L2
        Validation loss used to select the best round.
    min_bin_rows : int, default=1
        Bins with fewer training rows receive no update.
    n_jobs : int, default=1
        Workers used for per-feature histogram accumulation.
    verbose : bool, default=False
        Enable logging output.
    """

    def __init__(
        self,
        objective: Optional[ObjectiveFunction] = None,
        num_iterations: int = GamDefaults.NUM_ITERATIONS,
        learning_rate: float = GamDefaults.LEARNING_RATE,
        max_bins: int = GamDefaults.MAX_BINS,
        pruning_metric: Union[PruningMetric, int, str] = PruningMetric.L2,
        min_bin_rows: int = 1,
        n_jobs: int = 1,
        verbose: bool = False
    ):
        self.objective = objective if objective is not None else ObjectiveFunction()
        self.num_iterations = num_iterations
        self.learning_rate = learning_rate
        self.max_bins = max_bins
        self.pruning_metric = pruning_metric
        self.min_bin_rows = min_bin_rows
        self.n_jobs = n_jobs
        self.verbose = verbose

        # Training results
        self.binner_: Optional[FeatureBinner] = None
        self.train_scores_: List[float] = []
        self.pruning_history_: List = []
        self.best_iteration_: Optional[int] = None
        self.rounds_completed_: int = 0
        self.predictor_: Optional[GamPredictor] = None

        if self.verbose:
            logging.basicConfig(level=logging.INFO)

    def _validate_params(self) -> PruningMetric:
        def is_int(v):
            return isinstance(v, (int, np.integer)) and not isinstance(v, bool)

        if not is_int(self.num_iterations) or self.num_iterations <= 0:
            raise ConfigError(f"num_iterations must be an integer > 0, got {self.num_iterations!r}")
        if (isinstance(self.learning_rate, bool)
                or not isinstance(self.learning_rate, (int, float, np.number))
                or not np.isfinite(self.learning_rate)
                or self.learning_rate <= 0):
            raise ConfigError(f"learning_rate must be a finite number > 0, got {self.learning_rate!r}")
        if not is_int(self.max_bins) or self.max_bins <= 1:
            raise ConfigError(f"max_bins must be an integer > 1, got {self.max_bins!r}")
        if not is_int(self.min_bin_rows) or self.min_bin_rows < 1:
            raise ConfigError(f"min_bin_rows must be an integer >= 1, got {self.min_bin_rows!r}")
        if not isinstance(self.objective, ObjectiveFunction):
            raise ConfigError(f"objective must be an ObjectiveFunction, got {type(self.objective).__name__}")
        return PruningMetric.parse(self.pruning_metric)

    def _feature_chunks(self, n_features: int) -> List[List[int]]:
        n_chunks = max(1, min(n_features, self._effective_jobs()))
        return [chunk.tolist() for chunk in np.array_split(np.arange(n_features), n_chunks)
                if chunk.size]

    def _effective_jobs(self) -> int:
        if self.n_jobs is None or self.n_jobs == 0:
            return 1
        if self.n_jobs < 0:
            return max(1, cpu_count() + 1 + self.n_jobs)
        return int(self.n_jobs)

    def _compute_deltas(self, parallel, data: BinnedDataset, gradients: np.ndarray,
                        chunks: List[List[int]]) -> List[np.ndarray]:
        """Histogram step for all features; returns once every worker has finished."""
        bin_counts = data.bin_counts
        if len(chunks) <= 1:
            results = [_feature_deltas(data.bins, list(range(data.n_features)), gradients,
                                       data.weights, bin_counts, self.min_bin_rows)]
        else:
            results = parallel(
                delayed(_feature_deltas)(data.bins, chunk, gradients, data.weights,
                                         bin_counts, self.min_bin_rows)
                for chunk in chunks
            )
        deltas: List[np.ndarray] = []
        for chunk_result in results:
            deltas.extend(chunk_result)
        return deltas

    def train(
        self,
        train_set: LabeledRows,
        valid_set: Optional[LabeledRows] = None,
        cancel_event=None
    ) -> GamPredictor:
        """
        Fit the GAM and return the predictor frozen at the best round.

        Parameters
        ----------
        train_set : LabeledRows
            Training rows.
        valid_set : LabeledRows, optional
            Held-out rows used for pruning. Without it the final round is kept.
        cancel_event : object with is_set(), optional
            Checked at each round boundary; when set, training stops after
            the current round and the best completed round is kept.

        Returns
        -------
        predictor : GamPredictor
        """
        metric = self._validate_params()
        check_regression_label(train_set.labels)
        if valid_set is not None:
            check_regression_label(valid_set.labels)
            if valid_set.n_features != train_set.n_features:
                raise ValueError(
                    f"Validation set has {valid_set.n_features} features, "
                    f"training set has {train_set.n_features}"
                )

        self.binner_ = FeatureBinner(self.max_bins).fit(train_set.features)
        train = BinnedDataset.from_rows(train_set, self.binner_)
        valid = BinnedDataset.from_rows(valid_set, self.binner_) if valid_set is not None else None

        if train.weights.sum() <= 0:
            raise ValueError("Training weights sum to zero")
        if valid is not None and valid.weights.sum() <= 0:
            raise ValueError("Validation weights sum to zero")

        mean_effect = float(np.average(train.labels, weights=train.weights))
        bin_counts = train.bin_counts
        effects = [np.zeros(n, dtype=np.float64) for n in bin_counts]
        # Copy of the effect tables at the best validation round so far.
        best_effects = [table.copy() for table in effects]

        F_train = np.full(train.n_rows, mean_effect)
        F_valid = np.full(valid.n_rows, mean_effect) if valid is not None else None

        evaluator = PruningEvaluator(metric)
        self.train_scores_ = []
        self.rounds_completed_ = 0

        logger.info(f"Initial mean effect = {mean_effect:.6f}, "
                    f"{train.n_features} of {train.input_length} features used")

        chunks = self._feature_chunks(train.n_features)
        with Parallel(n_jobs=max(1, len(chunks)), prefer="threads") as parallel:
            for r in range(1, self.num_iterations + 1):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"Training cancelled after {r - 1} rounds")
                    break

                # (a) pseudo-residuals
                gradients = self.objective.compute_gradients(F_train, train.labels, train.weights)

                # (b) per-feature histogram regression
                deltas = self._compute_deltas(parallel, train, gradients, chunks)

                # (c) shrunken additive update
                for f, delta in enumerate(deltas):
                    step = self.learning_rate * delta
                    effects[f] += step
                    F_train += step[train.bins[:, f]]
                    if valid is not None:
                        F_valid += step[valid.bins[:, f]]
                self.rounds_completed_ = r

                train_loss = l2_loss(train.labels, F_train, train.weights)
                self.train_scores_.append(train_loss)

                # (d) validation loss
                if valid is not None:
                    val_loss = evaluator.evaluate(F_valid, valid.labels, valid.weights)
                    if evaluator.record_and_get_best(r, val_loss) == r:
                        best_effects = [table.copy() for table in effects]
                    if r % 10 == 0:
                        logger.info(
                            f"Iteration {r}/{self.num_iterations}: "
                            f"train_mse={train_loss:.6f}, val_{metric.name.lower()}={val_loss:.6f}"
                        )
                elif r % 10 == 0:
                    logger.info(f"Iteration {r}/{self.num_iterations}: train_mse={train_loss:.6f}")

        self.pruning_history_ = list(evaluator.history)
        if evaluator.best_iteration is not None:
            self.best_iteration_ = evaluator.best_iteration
            effects = best_effects
            logger.info(f"Best iteration: {self.best_iteration_} of {self.rounds_completed_}, "
                        f"val_{metric.name.lower()}={evaluator.best_loss:.6f}")
        else:
            self.best_iteration_ = self.rounds_completed_
            logger.info(f"Best iteration: {self.best_iteration_} of {self.rounds_completed_}")

        mean_effect, effects = self._center(mean_effect, effects, train)

        self.predictor_ = GamPredictor(
            mean_effect=mean_effect,
            bin_effects=effects,
            bin_upper_bounds=train.upper_bounds,
            feature_map=train.feature_map,
            input_length=train.input_length,
        )
        return self.predictor_

    @staticmethod
    def _center(mean_effect: float, effects: List[np.ndarray], data: BinnedDataset):
        """Move each feature's weighted mean effect into the intercept."""
        centered = []
        for f, table in enumerate(effects):
            bin_weight = np.bincount(data.bins[:, f], weights=data.weights, minlength=table.size)
            offset = float(np.dot(bin_weight, table) / bin_weight.sum())
            centered.append(table - offset)
            mean_effect += offset
        return mean_effect, centered

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        sample_weight: Optional[np.ndarray] = None,
        X_val: Optional[np.ndarray] = None,
        y_val: Optional[np.ndarray] = None,
        val_weight: Optional[np.ndarray] = None
    ) -> "BoostingTrainer":
        """Array front-end for `train`; the predictor is kept in `predictor_`."""
        valid = None
        if X_val is not None and y_val is not None:
            valid = LabeledRows(X_val, y_val, val_weight)
        self.train(LabeledRows(X, y, sample_weight), valid)
        return self

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Predict regression targets with the trained predictor."""
        if self.predictor_ is None:
            raise RuntimeError("Trainer has not been fitted")
        return self.predictor_.predict(X)
