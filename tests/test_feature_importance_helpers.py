from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from loss_cost_explain.pipelines import feature_importance as fi
from loss_cost_explain.pipelines.common import MissingPredictorError
from loss_cost_explain.pipelines.scoring import build_explainer


class SignalOnly:
    def predict(self, x: pd.DataFrame) -> np.ndarray:
        return 3.0 * x["signal"].to_numpy(dtype=float)


def _synthetic(n_rows: int = 200) -> pd.DataFrame:
    rng = np.random.default_rng(7)
    signal = rng.normal(0.0, 1.0, n_rows)
    return pd.DataFrame(
        {
            "signal": signal,
            "noise": rng.normal(0.0, 1.0, n_rows),
            "loss_per_exposure": 3.0 * signal,
            "exposure": rng.uniform(0.1, 1.0, n_rows),
        }
    )


def test_weighted_rmse_matches_formula() -> None:
    observed = np.array([1.0, 2.0])
    predicted = np.array([1.0, 4.0])
    weights = np.array([1.0, 3.0])
    assert fi.weighted_rmse(observed, predicted, weights) == pytest.approx(np.sqrt(3.0))


def test_weighted_rmse_ignores_zero_weight_rows() -> None:
    observed = np.array([1.0, 2.0, 100.0])
    predicted = np.array([2.0, 3.0, 0.0])
    weights = np.array([1.0, 1.0, 0.0])
    assert fi.weighted_rmse(observed, predicted, weights) == pytest.approx(1.0)


def test_weighted_rmse_is_nan_when_all_weights_zero() -> None:
    assert np.isnan(fi.weighted_rmse(np.array([1.0, 2.0]), np.array([0.0, 0.0]), np.zeros(2)))


def test_feature_importance_on_zero_exposure_sample_gives_nan_losses() -> None:
    table = _synthetic(3).assign(exposure=0.0)
    explainer = build_explainer(SignalOnly(), table, predictors=["signal", "noise"])
    records = fi.compute_feature_importance(explainer, n_repeats=1, seed=0)

    assert records["variable"].tolist() == [fi.FULL_MODEL, "signal", "noise", fi.BASELINE]
    assert records["dropout_loss"].isna().all()


def test_records_have_sentinels_for_every_repetition() -> None:
    explainer = build_explainer(SignalOnly(), _synthetic(), predictors=["signal", "noise"])
    records = fi.compute_feature_importance(explainer, n_repeats=3, n_sample=50, seed=1)

    assert records.columns.tolist() == ["variable", "permutation", "dropout_loss", "label"]
    assert len(records) == 3 * (2 + 2)
    assert records["permutation"].tolist() == [0] * 4 + [1] * 4 + [2] * 4
    assert records["variable"].tolist()[:4] == [fi.FULL_MODEL, "signal", "noise", fi.BASELINE]


def test_full_model_loss_not_above_permuted_losses() -> None:
    explainer = build_explainer(SignalOnly(), _synthetic(), predictors=["signal", "noise"])
    records = fi.compute_feature_importance(explainer, n_repeats=5, n_sample=100, seed=2)
    summary = fi.summarize_feature_importance(records).set_index("variable")["dropout_loss"]

    full = summary[fi.FULL_MODEL]
    assert full == pytest.approx(0.0)
    assert full <= summary["noise"]
    assert full < summary["signal"]
    assert summary["signal"] > summary["noise"]


def test_feature_importance_is_reproducible_with_seed() -> None:
    explainer = build_explainer(SignalOnly(), _synthetic(), predictors=["signal", "noise"])
    first = fi.compute_feature_importance(explainer, n_repeats=2, n_sample=30, seed=5)
    second = fi.compute_feature_importance(explainer, n_repeats=2, n_sample=30, seed=5)
    pd.testing.assert_frame_equal(first, second)


def test_feature_importance_unknown_variable_raises() -> None:
    explainer = build_explainer(SignalOnly(), _synthetic(), predictors=["signal", "noise"])
    with pytest.raises(MissingPredictorError):
        fi.compute_feature_importance(explainer, variables=["signal", "make"], n_repeats=1)


def test_summarize_averages_per_variable() -> None:
    records = pd.DataFrame(
        {
            "variable": [fi.FULL_MODEL, "a", fi.FULL_MODEL, "a"],
            "permutation": [0, 0, 1, 1],
            "dropout_loss": [1.0, 2.0, 3.0, 6.0],
            "label": "neural_net",
        }
    )
    summary = fi.summarize_feature_importance(records)
    assert summary["variable"].tolist() == [fi.FULL_MODEL, "a"]
    assert summary["dropout_loss"].tolist() == [2.0, 4.0]
    assert summary["n_repeats"].tolist() == [2, 2]


def test_rank_for_display_sorts_and_clamps_below_reference() -> None:
    summary = pd.DataFrame(
        {
            "variable": [fi.FULL_MODEL, "b", "a", fi.BASELINE],
            "dropout_loss": [1.0, 1.5, 0.8, 2.0],
        }
    )
    ranked = fi.rank_for_display(summary)
    assert ranked["variable"].tolist() == ["a", "b"]
    assert ranked["display_loss"].tolist() == [1.0, 1.5]
    assert ranked["clipped"].tolist() == [True, False]


def test_full_model_loss_requires_sentinel() -> None:
    with pytest.raises(ValueError):
        fi.full_model_loss(pd.DataFrame({"variable": ["a"], "dropout_loss": [1.0]}))


def test_plot_feature_importance_writes_png(tmp_path: Path) -> None:
    explainer = build_explainer(SignalOnly(), _synthetic(), predictors=["signal", "noise"])
    records = fi.compute_feature_importance(explainer, n_repeats=2, n_sample=50, seed=3)
    path = tmp_path / "fi-plot.png"
    fi.plot_feature_importance(fi.summarize_feature_importance(records), path)
    assert path.exists()
