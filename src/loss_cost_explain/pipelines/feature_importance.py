"""Permutation feature importance with an exposure-weighted RMSE loss."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from sklearn.metrics import mean_squared_error

from loss_cost_explain.pipelines.common import MissingPredictorError
from loss_cost_explain.pipelines.scoring import Explainer

FULL_MODEL = "_full_model_"
BASELINE = "_baseline_"
SENTINELS = (FULL_MODEL, BASELINE)
DEFAULT_REPEATS = 10
DEFAULT_FI_SAMPLES = 50000

LossFunction = Callable[[np.ndarray, np.ndarray, np.ndarray], float]

LOGGER = logging.getLogger(__name__)


def weighted_rmse(observed: np.ndarray, predicted: np.ndarray, weights: np.ndarray) -> float:
    """sqrt(sum((observed - predicted)^2 * w) / sum(w)); NaN when every weight is zero."""
    if float(np.sum(weights)) == 0.0:
        return float("nan")
    return float(np.sqrt(mean_squared_error(observed, predicted, sample_weight=weights)))


def _draw_rows(n_rows: int, n_sample: int | None, rng: np.random.Generator) -> np.ndarray:
    if n_sample is None or int(n_sample) >= n_rows:
        return np.arange(n_rows)
    return rng.choice(n_rows, size=int(n_sample), replace=False)


def compute_feature_importance(
    explainer: Explainer,
    loss_function: LossFunction = weighted_rmse,
    variables: Sequence[str] | None = None,
    *,
    n_repeats: int = DEFAULT_REPEATS,
    n_sample: int | None = DEFAULT_FI_SAMPLES,
    seed: int | None = None,
) -> pd.DataFrame:
    """Dropout loss per variable and repetition, plus the two sentinel rows.

    Each repetition draws its own row sample. ``_full_model_`` is the loss on the
    unpermuted sample, ``_baseline_`` the loss of a constant predictor equal to
    the weighted mean outcome of that sample.
    """
    variables = list(explainer.predictors if variables is None else variables)
    missing = [v for v in variables if v not in explainer.data.columns]
    if missing:
        raise MissingPredictorError(f"Missing required column(s): {missing}")
    if int(n_repeats) < 1:
        raise ValueError(f"n_repeats must be >= 1, got {n_repeats}")
    if n_sample is not None and int(n_sample) < 1:
        raise ValueError(f"n_sample must be >= 1, got {n_sample}")

    rng = np.random.default_rng(seed)
    observed = explainer.y.to_numpy(dtype=float)
    weights = explainer.weights.to_numpy(dtype=float)

    rows: list[dict[str, float | int | str]] = []

    def record(variable: str, rep: int, loss: float) -> None:
        rows.append({"variable": variable, "permutation": rep, "dropout_loss": float(loss), "label": explainer.label})

    for rep in range(int(n_repeats)):
        idx = _draw_rows(len(explainer.data), n_sample, rng)
        sample = explainer.data.iloc[idx].reset_index(drop=True)
        y_s = observed[idx]
        w_s = weights[idx]

        full_loss = loss_function(y_s, explainer.predict(sample), w_s)
        record(FULL_MODEL, rep, full_loss)

        for variable in variables:
            x_perm = sample.copy()
            x_perm[variable] = rng.permutation(x_perm[variable].to_numpy())
            record(variable, rep, loss_function(y_s, explainer.predict(x_perm), w_s))

        mean_outcome = np.average(y_s, weights=w_s) if float(np.sum(w_s)) > 0 else float("nan")
        constant = np.full(len(y_s), mean_outcome)
        record(BASELINE, rep, loss_function(y_s, constant, w_s))
        LOGGER.info("Permutation round %d/%d: full model loss=%.4f", rep + 1, int(n_repeats), full_loss)

    return pd.DataFrame(rows, columns=["variable", "permutation", "dropout_loss", "label"])


def summarize_feature_importance(records: pd.DataFrame) -> pd.DataFrame:
    return (
        records.groupby("variable", as_index=False, sort=False)
        .agg(dropout_loss=("dropout_loss", "mean"), n_repeats=("dropout_loss", "size"))
        .reset_index(drop=True)
    )


def full_model_loss(summary: pd.DataFrame) -> float:
    match = summary.loc[summary["variable"] == FULL_MODEL, "dropout_loss"]
    if match.empty:
        raise ValueError(f"Importance summary has no '{FULL_MODEL}' row.")
    return float(match.iloc[0])


def rank_for_display(summary: pd.DataFrame) -> pd.DataFrame:
    """Sort predictors by ascending mean loss and clamp values below the full-model loss.

    Clamped values stay in the table with ``display_loss`` equal to the
    reference so the bar collapses onto the axis limit.
    """
    reference = full_model_loss(summary)
    out = summary[~summary["variable"].isin(SENTINELS)].copy()
    out = out.sort_values("dropout_loss", ascending=True, kind="mergesort").reset_index(drop=True)
    out["display_loss"] = np.maximum(out["dropout_loss"].to_numpy(dtype=float), reference)
    out["clipped"] = out["dropout_loss"] < reference
    return out


def plot_feature_importance(summary: pd.DataFrame, out_path: Path) -> None:
    reference = full_model_loss(summary)
    ranked = rank_for_display(summary)

    upper = float(ranked["display_loss"].max()) if not ranked.empty else reference
    span = upper - reference
    pad = span * 0.05 if span > 0 else max(abs(reference) * 0.05, 1e-6)

    plt.figure(figsize=(8, 5))
    plt.barh(
        ranked["variable"],
        ranked["display_loss"] - reference,
        left=reference,
        color="#595959",
        alpha=0.8,
    )
    plt.axvline(reference, color="red", linestyle="--")
    plt.xlim(reference, upper + pad)
    plt.xlabel("Dropout Loss (RMSE)")
    plt.ylabel("Variable")
    plt.grid(axis="x", alpha=0.3)
    plt.tight_layout()
    plt.savefig(out_path, dpi=180)
    plt.close()
