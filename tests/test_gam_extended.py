"""
Extended tests for the GAM boosting implementation.

Coverage:
- Label validation and configuration errors
- Feature binning (distinct-value and quantile cuts, unused features, NaN)
- Pruning: history length, earliest-minimum selection, best-round rewind
- Cancellation at round boundaries
- Sample weights
- Additivity, immutability and idempotence of the predictor
- Persistence round-trip and version checks
- Registry lookups
- Accuracy on a known additive target
"""

import io
import struct
import sys
import threading
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from sklearn.datasets import make_regression
from sklearn.metrics import r2_score

# ---------- path setup ----------
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from gamboost.data import BinnedDataset, FeatureBinner, LabeledRows, bin_index, check_regression_label
from gamboost.exceptions import ConfigError, DimensionError, LabelTypeError, VersionError
from gamboost.objectives import LossKind, ObjectiveFunction
from gamboost.predictor import (
    MODEL_SIGNATURE,
    VER_WE_CAN_READ_BACK,
    VER_WRITTEN_CUR,
    GamPredictor,
)
from gamboost.pruning import PruningMetric
from gamboost.registry import available_trainers, create_trainer, load_model
from gamboost.trainer import BoostingTrainer
from gamboost.utils import compute_metrics_regression


@pytest.fixture
def regression_rows():
    X, y = make_regression(n_samples=120, n_features=4, noise=2.0, random_state=11)
    return LabeledRows(X, y)


@pytest.fixture
def trained_predictor(regression_rows):
    trainer = BoostingTrainer(num_iterations=15, learning_rate=0.2, max_bins=16)
    return trainer.train(regression_rows)


class _CancelAfter:
    """Reports cancellation once `rounds` round boundaries have been checked."""

    def __init__(self, rounds):
        self.rounds = rounds
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.rounds


# =============================================================================
# Labels and configuration
# =============================================================================


class TestLabelValidation:

    def test_string_labels_rejected(self):
        with pytest.raises(LabelTypeError):
            check_regression_label(np.array(["a", "b", "c"]))

    def test_vector_labels_rejected(self):
        with pytest.raises(LabelTypeError):
            check_regression_label(np.zeros((5, 2)))

    def test_boolean_labels_rejected(self):
        with pytest.raises(LabelTypeError):
            check_regression_label(np.array([True, False]))

    def test_multi_column_frame_rejected(self):
        with pytest.raises(LabelTypeError):
            check_regression_label(pd.DataFrame({"a": [1.0], "b": [2.0]}))

    def test_nan_labels_rejected(self):
        with pytest.raises(ValueError):
            check_regression_label(np.array([1.0, np.nan]))

    def test_integer_column_accepted(self):
        labels = check_regression_label(pd.Series([1, 2, 3]))
        assert labels.dtype == np.float64
        np.testing.assert_array_equal(labels, [1.0, 2.0, 3.0])

    def test_scalar_labels_rejected(self):
        with pytest.raises(LabelTypeError):
            LabeledRows(np.zeros((3, 2)), 5.0)

    def test_train_checks_label_before_any_round(self):
        X = np.arange(6, dtype=float).reshape(3, 2)
        trainer = BoostingTrainer(num_iterations=3, learning_rate=0.1, max_bins=4)
        with pytest.raises(LabelTypeError):
            trainer.train(LabeledRows(X, np.array(["x", "y", "z"])))
        assert trainer.rounds_completed_ == 0


class TestConfiguration:

    @pytest.mark.parametrize("params", [
        {"num_iterations": 0},
        {"num_iterations": -3},
        {"learning_rate": 0.0},
        {"learning_rate": -0.1},
        {"learning_rate": float("nan")},
        {"max_bins": 1},
        {"min_bin_rows": 0},
        {"pruning_metric": "l3"},
        {"pruning_metric": 3},
    ])
    def test_invalid_params_raise_config_error(self, regression_rows, params):
        base = {"num_iterations": 5, "learning_rate": 0.1, "max_bins": 8}
        base.update(params)
        with pytest.raises(ConfigError):
            BoostingTrainer(**base).train(regression_rows)

    def test_config_checked_before_label(self):
        X = np.arange(6, dtype=float).reshape(3, 2)
        with pytest.raises(ConfigError):
            BoostingTrainer(num_iterations=0).train(LabeledRows(X, np.array(["x", "y", "z"])))

    def test_pruning_metric_aliases(self):
        assert PruningMetric.parse("L1") is PruningMetric.L1
        assert PruningMetric.parse(2) is PruningMetric.L2
        assert LossKind.parse("L1") is LossKind.L1


# =============================================================================
# Binning
# =============================================================================


class TestFeatureBinner:

    def test_few_distinct_values_use_midpoints(self):
        X = np.array([[1.0], [1.0], [2.0], [3.0]])
        binner = FeatureBinner(max_bins=8).fit(X)

        np.testing.assert_allclose(binner.upper_bounds_[0], [1.5, 2.5, np.inf])
        np.testing.assert_array_equal(binner.transform(X)[:, 0], [0, 0, 1, 2])

    def test_bin_count_capped(self):
        X = np.random.default_rng(0).standard_normal((1000, 1))
        binner = FeatureBinner(max_bins=10).fit(X)

        bins = binner.transform(X)
        assert len(binner.upper_bounds_[0]) <= 10
        assert bins.min() >= 0 and bins.max() < len(binner.upper_bounds_[0])

    def test_constant_column_excluded_from_feature_map(self):
        X = np.column_stack([np.arange(5.0), np.full(5, 7.0), np.arange(5.0) ** 2])
        binner = FeatureBinner(max_bins=8).fit(X)

        np.testing.assert_array_equal(binner.feature_map_, [0, 2])
        assert binner.transform(X).shape == (5, 2)

    def test_nan_goes_to_last_bin(self):
        bounds = np.array([0.5, 1.5, np.inf])
        np.testing.assert_array_equal(bin_index(bounds, [np.nan, 0.0, 1.0, 9.0]), [2, 0, 1, 2])

    def test_max_bins_must_exceed_one(self):
        with pytest.raises(ConfigError):
            FeatureBinner(max_bins=1)

    def test_binned_dataset_shapes(self, regression_rows):
        binner = FeatureBinner(max_bins=16).fit(regression_rows.features)
        data = BinnedDataset.from_rows(regression_rows, binner)

        assert data.bins.shape == (120, 4)
        assert len(data.bin_counts) == len(data.feature_map) == 4
        assert all(n <= 16 for n in data.bin_counts)
        np.testing.assert_array_equal(data.weights, np.ones(120))


# =============================================================================
# Pruning and rewind
# =============================================================================


def _noisy_split(seed):
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((60, 3))
    y = X[:, 0] + rng.standard_normal(60)
    return LabeledRows(X[:40], y[:40]), LabeledRows(X[40:], y[40:])


class TestPruning:

    def test_history_has_one_entry_per_round(self):
        train, valid = _noisy_split(0)
        trainer = BoostingTrainer(num_iterations=12, learning_rate=0.3, max_bins=32)
        trainer.train(train, valid)

        assert [it for it, _ in trainer.pruning_history_] == list(range(1, 13))
        assert trainer.rounds_completed_ == 12

    def test_best_iteration_is_earliest_minimum(self):
        train, valid = _noisy_split(1)
        trainer = BoostingTrainer(num_iterations=30, learning_rate=0.5, max_bins=64)
        trainer.train(train, valid)

        losses = np.array([loss for _, loss in trainer.pruning_history_])
        assert trainer.best_iteration_ == int(np.argmin(losses)) + 1

    def test_without_validation_final_round_is_kept(self, regression_rows):
        trainer = BoostingTrainer(num_iterations=7, learning_rate=0.1, max_bins=8)
        trainer.train(regression_rows)

        assert trainer.best_iteration_ == 7
        assert trainer.pruning_history_ == []

    def test_rewind_reconstructs_best_round(self):
        """The pruned model equals a model trained for exactly best_iteration rounds."""
        train, valid = _noisy_split(2)
        pruned = BoostingTrainer(num_iterations=30, learning_rate=0.5, max_bins=64)
        pruned_predictor = pruned.train(train, valid)

        direct = BoostingTrainer(
            num_iterations=pruned.best_iteration_, learning_rate=0.5, max_bins=64
        )
        direct_predictor = direct.train(train)

        np.testing.assert_allclose(
            pruned_predictor.predict(valid.features),
            direct_predictor.predict(valid.features),
            rtol=1e-10, atol=1e-12
        )

    def test_pruned_model_scores_best_validation_loss(self):
        """Later rounds never leak into the kept effect tables."""
        train, valid = _noisy_split(2)
        trainer = BoostingTrainer(num_iterations=30, learning_rate=0.5, max_bins=64)
        predictor = trainer.train(train, valid)

        losses = [loss for _, loss in trainer.pruning_history_]
        kept_loss = np.mean((valid.labels - predictor.predict(valid.features)) ** 2)
        assert kept_loss == pytest.approx(min(losses), rel=1e-9)
        if trainer.best_iteration_ < trainer.rounds_completed_:
            assert kept_loss < losses[-1]

    def test_l1_pruning_metric_recorded(self):
        train, valid = _noisy_split(3)
        trainer = BoostingTrainer(num_iterations=5, learning_rate=0.3, max_bins=16,
                                  pruning_metric="l1")
        predictor = trainer.train(train, valid)

        # Without rewinding (best == last), the last L1 loss matches the predictor.
        trainer_last = BoostingTrainer(num_iterations=5, learning_rate=0.3, max_bins=16)
        final = trainer_last.train(train)
        expected = np.mean(np.abs(valid.labels - final.predict(valid.features)))
        assert trainer.pruning_history_[-1][1] == pytest.approx(expected, rel=1e-9)
        assert predictor is trainer.predictor_


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:

    def test_cancel_before_first_round(self, regression_rows):
        event = threading.Event()
        event.set()
        trainer = BoostingTrainer(num_iterations=10, learning_rate=0.1, max_bins=8)
        predictor = trainer.train(regression_rows, cancel_event=event)

        assert trainer.rounds_completed_ == 0
        assert trainer.best_iteration_ == 0
        np.testing.assert_allclose(
            predictor.predict(regression_rows.features), np.mean(regression_rows.labels)
        )

    def test_cancel_at_round_boundary(self):
        train, valid = _noisy_split(4)
        trainer = BoostingTrainer(num_iterations=20, learning_rate=0.3, max_bins=16)
        trainer.train(train, valid, cancel_event=_CancelAfter(6))

        assert trainer.rounds_completed_ == 6
        assert len(trainer.pruning_history_) == 6
        assert 1 <= trainer.best_iteration_ <= 6


# =============================================================================
# Weights
# =============================================================================


class TestSampleWeights:

    def test_zero_weight_rows_are_ignored(self):
        rng = np.random.default_rng(5)
        X = rng.integers(0, 5, size=(80, 3)).astype(float)
        y = X[:, 0] - 2.0 * X[:, 1] + rng.standard_normal(80)

        X_aug = np.vstack([X, X[:20]])
        y_aug = np.concatenate([y, np.full(20, 1000.0)])
        w_aug = np.concatenate([np.ones(80), np.zeros(20)])

        params = {"num_iterations": 10, "learning_rate": 0.2, "max_bins": 8}
        plain = BoostingTrainer(**params).train(LabeledRows(X, y))
        weighted = BoostingTrainer(**params).train(LabeledRows(X_aug, y_aug, w_aug))

        np.testing.assert_allclose(plain.predict(X), weighted.predict(X), rtol=1e-9, atol=1e-9)

    def test_zero_validation_weights_rejected_before_training(self):
        train, valid = _noisy_split(6)
        valid.weights = np.zeros(valid.n_rows)
        trainer = BoostingTrainer(num_iterations=5, learning_rate=0.3, max_bins=16)

        with pytest.raises(ValueError, match="Validation weights"):
            trainer.train(train, valid)
        assert trainer.rounds_completed_ == 0
        assert trainer.predictor_ is None

    def test_negative_weights_rejected(self):
        with pytest.raises(ValueError):
            LabeledRows(np.zeros((2, 1)), np.zeros(2), np.array([1.0, -1.0]))


# =============================================================================
# Predictor behaviour
# =============================================================================


class TestPredictor:

    def test_contributions_sum_to_score(self, trained_predictor, regression_rows):
        x = regression_rows.features[3]
        contributions = trained_predictor.feature_contributions(x)

        assert contributions.shape == (trained_predictor.num_shape_functions,)
        assert trained_predictor.mean_effect + contributions.sum() == pytest.approx(
            trained_predictor.score(x), rel=1e-12, abs=1e-9
        )

    def test_score_matches_predict(self, trained_predictor, regression_rows):
        X = regression_rows.features
        batch = trained_predictor.predict(X)
        single = np.array([trained_predictor.score(x) for x in X])
        np.testing.assert_array_equal(batch, single)

    def test_score_is_idempotent(self, trained_predictor, regression_rows):
        x = regression_rows.features[0]
        assert trained_predictor.score(x) == trained_predictor.score(x)

    def test_effect_tables_are_read_only(self, trained_predictor):
        with pytest.raises(ValueError):
            trained_predictor.get_bin_effects(0)[0] = 1.0

    def test_predictor_does_not_alias_inputs(self):
        effects = np.array([1.0, 2.0])
        predictor = GamPredictor(0.0, [effects], [[0.0, np.inf]], [0], 1)
        effects[0] = 100.0
        assert predictor.score([-1.0]) == pytest.approx(1.0)

    def test_matrix_with_wrong_width_raises(self, trained_predictor):
        with pytest.raises(DimensionError):
            trained_predictor.predict(np.zeros((2, 5)))
        with pytest.raises(DimensionError):
            trained_predictor.score(np.zeros((1, 4)))

    def test_centered_shape_functions(self, regression_rows):
        trainer = BoostingTrainer(num_iterations=10, learning_rate=0.2, max_bins=16)
        predictor = trainer.train(regression_rows)
        bins = trainer.binner_.transform(regression_rows.features)

        for f in range(predictor.num_shape_functions):
            effects = predictor.get_bin_effects(f)
            assert np.mean(effects[bins[:, f]]) == pytest.approx(0.0, abs=1e-9)

    def test_predict_frame_score_column(self, trained_predictor, regression_rows):
        frame = pd.DataFrame(regression_rows.features, columns=list("abcd"))
        scored = trained_predictor.predict_frame(frame)

        assert list(scored.columns) == ["Score"]
        np.testing.assert_array_equal(scored["Score"].to_numpy(),
                                      trained_predictor.predict(regression_rows.features))

    def test_summary_lists_every_bin(self, trained_predictor):
        summary = trained_predictor.summary()
        n_bins = sum(len(trained_predictor.get_bin_effects(f))
                     for f in range(trained_predictor.num_shape_functions))
        assert len(summary) == n_bins
        assert set(summary["feature"]) == set(trained_predictor.feature_map.tolist())


# =============================================================================
# Persistence
# =============================================================================


class TestPersistence:

    def test_round_trip_file(self, trained_predictor, regression_rows, tmp_path):
        path = tmp_path / "model.gam"
        trained_predictor.save(str(path))
        loaded = GamPredictor.load(str(path))

        X = regression_rows.features
        np.testing.assert_array_equal(loaded.predict(X), trained_predictor.predict(X))
        assert loaded.mean_effect == trained_predictor.mean_effect
        assert loaded.input_length == trained_predictor.input_length
        np.testing.assert_array_equal(loaded.feature_map, trained_predictor.feature_map)

    def test_round_trip_stream(self, trained_predictor):
        buf = io.BytesIO()
        trained_predictor.save(buf)
        buf.seek(0)
        loaded = GamPredictor.load(buf)

        assert loaded.to_bytes() == trained_predictor.to_bytes()

    def test_header_layout(self, trained_predictor):
        payload = trained_predictor.to_bytes()
        signature, written, readable, read_back = struct.unpack_from("<8sIII", payload)

        assert signature == MODEL_SIGNATURE == b"GAM REGP"
        assert written == VER_WRITTEN_CUR
        assert readable <= written
        assert read_back == VER_WE_CAN_READ_BACK
        (mean_effect,) = struct.unpack_from("<d", payload, 20)
        assert mean_effect == trained_predictor.mean_effect

    def test_model_requiring_newer_reader_rejected(self, trained_predictor):
        payload = bytearray(trained_predictor.to_bytes())
        struct.pack_into("<I", payload, 12, VER_WRITTEN_CUR + 0x00010000)
        with pytest.raises(VersionError):
            GamPredictor.from_bytes(bytes(payload))

    def test_model_too_old_rejected(self, trained_predictor):
        payload = bytearray(trained_predictor.to_bytes())
        struct.pack_into("<I", payload, 8, VER_WE_CAN_READ_BACK - 1)
        with pytest.raises(VersionError):
            GamPredictor.from_bytes(bytes(payload))

    def test_truncated_model_rejected(self, trained_predictor):
        payload = trained_predictor.to_bytes()
        with pytest.raises(VersionError):
            GamPredictor.from_bytes(payload[:-4])
        with pytest.raises(VersionError):
            GamPredictor.from_bytes(payload[:6])

    def test_trailing_bytes_rejected(self, trained_predictor):
        with pytest.raises(VersionError):
            GamPredictor.from_bytes(trained_predictor.to_bytes() + b"\x00")

    def test_empty_model_round_trip(self):
        predictor = GamPredictor(2.5, [], [], [], 3)
        loaded = GamPredictor.from_bytes(predictor.to_bytes())
        assert loaded.score([1.0, 2.0, 3.0]) == 2.5


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:

    def test_create_regression_trainer(self):
        trainer = create_trainer("gamr", num_iterations=3, learning_rate=0.1)
        assert isinstance(trainer, BoostingTrainer)
        assert trainer.objective.loss is LossKind.L2
        assert "RegressionGamTrainer" in available_trainers()

    def test_create_l1_trainer(self):
        trainer = create_trainer("RegressionGamTrainer", loss="l1")
        assert trainer.objective.loss is LossKind.L1

    def test_unknown_trainer(self):
        with pytest.raises(KeyError):
            create_trainer("gamc")

    def test_load_model_dispatches_on_signature(self, trained_predictor, tmp_path):
        path = tmp_path / "model.gam"
        trained_predictor.save(str(path))
        loaded = load_model(str(path))
        assert isinstance(loaded, GamPredictor)

    def test_load_model_unknown_signature(self):
        with pytest.raises(VersionError):
            load_model(io.BytesIO(b"GAM REGQ" + b"\x00" * 32))


# =============================================================================
# Accuracy
# =============================================================================


class TestAccuracy:

    def test_recovers_additive_target(self):
        rng = np.random.default_rng(0)
        X = rng.uniform(-2, 2, size=(2000, 3))
        y = np.sin(X[:, 0]) + X[:, 1] ** 2 + 0.1 * rng.standard_normal(2000)
        X_test = rng.uniform(-2, 2, size=(500, 3))
        y_test = np.sin(X_test[:, 0]) + X_test[:, 1] ** 2

        trainer = BoostingTrainer(num_iterations=200, learning_rate=0.1, max_bins=32)
        predictor = trainer.train(LabeledRows(X, y))

        assert r2_score(y_test, predictor.predict(X_test)) > 0.9
        # the noise feature should carry little effect
        spread = [np.ptp(predictor.get_bin_effects(f)) for f in range(3)]
        assert spread[2] < 0.25 * min(spread[0], spread[1])

    def test_metrics_match_numpy(self):
        y_true = np.array([1.0, 2.0, 3.0])
        y_pred = np.array([2.0, 2.0, 2.0])
        result = compute_metrics_regression(y_true, y_pred)
        assert result["mse"] == pytest.approx(2.0 / 3.0)
        assert result["rmse"] == pytest.approx(np.sqrt(2.0 / 3.0))
        assert result["mae"] == pytest.approx(2.0 / 3.0)

    def test_from_frame_training(self):
        rng = np.random.default_rng(9)
        frame = pd.DataFrame({
            "a": rng.standard_normal(100),
            "b": rng.standard_normal(100),
            "w": np.ones(100),
        })
        frame["Label"] = 3.0 * frame["a"]
        rows = LabeledRows.from_frame(frame, weight_column="w")

        assert rows.feature_names == ["a", "b"]
        predictor = BoostingTrainer(num_iterations=50, learning_rate=0.2, max_bins=16).train(rows)
        assert predictor.input_length == 2
        assert r2_score(frame["Label"], predictor.predict(rows.features)) > 0.8


class TestObjectiveInjection:

    def test_l1_objective_moves_toward_median(self):
        X = np.zeros((5, 1))
        X[:, 0] = [0, 0, 0, 0, 1]
        y = np.array([0.0, 0.0, 1.0, 100.0, 5.0])

        trainer = BoostingTrainer(objective=ObjectiveFunction("l1"), num_iterations=1,
                                  learning_rate=1.0, max_bins=4)
        predictor = trainer.train(LabeledRows(X, y))

        mean = np.mean(y)
        # residual signs in bin 0: [-1, -1, -1, +1] -> mean -0.5
        assert predictor.score([0.0]) == pytest.approx(mean - 0.5)
