"""Partial dependence of the model output on one predictor, plus its figure."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from loss_cost_explain.pipelines.common import (
    MissingPredictorError,
    UnsupportedPredictorError,
    humanize,
    is_numeric_predictor,
    predictor_levels,
)
from loss_cost_explain.pipelines.scoring import Explainer

DEFAULT_PDP_VARIABLE = "vehicle_age"
DEFAULT_GRID_START = 0.0
DEFAULT_GRID_STOP = 35.0
DEFAULT_GRID_STEP = 0.1
DEFAULT_PDP_SAMPLES = 10000
DEFAULT_GRID_POINTS = 101
HIST_BINS = 30

LOGGER = logging.getLogger(__name__)


def make_grid(start: float, stop: float, step: float) -> np.ndarray:
    """Inclusive arithmetic grid: ``make_grid(0, 35, 0.1)`` has 351 points."""
    if step <= 0:
        raise ValueError(f"Grid step must be positive, got {step}")
    if stop < start:
        raise ValueError(f"Grid stop {stop} is below start {start}")
    n_steps = int(np.floor((stop - start) / step + 1e-9))
    return start + step * np.arange(n_steps + 1, dtype=float)


def default_grid(values: pd.Series, n_points: int = DEFAULT_GRID_POINTS) -> np.ndarray:
    arr = pd.to_numeric(values, errors="coerce").dropna().to_numpy(dtype=float)
    if len(arr) == 0:
        return np.array([])
    qs = np.linspace(0.0, 1.0, int(n_points))
    return np.unique(np.quantile(arr, qs)).astype(float)


def sample_base_rows(data: pd.DataFrame, n_samples: int | None, seed: int | None = None) -> pd.DataFrame:
    """Draw ``n_samples`` rows without replacement, or every row when the table is not larger."""
    if n_samples is not None and int(n_samples) < 1:
        raise ValueError(f"n_samples must be >= 1, got {n_samples}")
    if n_samples is None or int(n_samples) >= len(data):
        return data.reset_index(drop=True)
    rng = np.random.default_rng(seed)
    idx = rng.choice(len(data), size=int(n_samples), replace=False)
    return data.iloc[idx].reset_index(drop=True)


def compute_partial_dependence(
    explainer: Explainer,
    predictor: str,
    grid: Sequence[Any] | np.ndarray | None = None,
    *,
    n_samples: int | None = DEFAULT_PDP_SAMPLES,
    seed: int | None = None,
) -> pd.DataFrame:
    if predictor not in explainer.data.columns:
        raise MissingPredictorError(f"Missing required column(s): {[predictor]}")

    values = explainer.data[predictor]
    if grid is None:
        if not is_numeric_predictor(values):
            levels = predictor_levels(values)
            raise UnsupportedPredictorError(
                f"Predictor '{predictor}' is categorical; pass an explicit grid of levels, e.g. {levels[:5]}."
            )
        grid_values = default_grid(values).tolist()
    else:
        grid_values = list(grid)
    if not grid_values:
        raise ValueError(f"Empty partial dependence grid for '{predictor}'.")

    base = sample_base_rows(explainer.data, n_samples, seed)
    LOGGER.info(
        "Partial dependence for %s: %d grid values x %d base rows",
        predictor,
        len(grid_values),
        len(base),
    )

    means: list[float] = []
    for val in grid_values:
        x_mod = base.copy()
        x_mod[predictor] = val
        means.append(float(np.mean(explainer.predict(x_mod))))

    return pd.DataFrame(
        {
            "variable": predictor,
            "x": grid_values,
            "yhat": means,
            "label": explainer.label,
        }
    )


def plot_partial_dependence(
    pdp_df: pd.DataFrame,
    values: pd.Series,
    out_path: Path,
    *,
    x_label: str | None = None,
) -> None:
    variable = str(pdp_df["variable"].iloc[0]) if not pdp_df.empty else str(values.name)
    observed = pd.to_numeric(values, errors="coerce").dropna()

    fig, (ax_pdp, ax_hist) = plt.subplots(
        2,
        1,
        figsize=(8, 7),
        sharex=True,
        gridspec_kw={"height_ratios": [2, 1]},
    )
    ax_pdp.plot(pdp_df["x"], pdp_df["yhat"], color="black")
    ax_pdp.set_ylabel("Average Predicted Loss Cost")
    ax_pdp.tick_params(axis="x", which="both", bottom=False, labelbottom=False)
    ax_pdp.grid(True, alpha=0.3)

    ax_hist.hist(observed, bins=HIST_BINS, alpha=0.8, color="#595959")
    ax_hist.set_ylabel("Count")
    ax_hist.set_xlabel(x_label or humanize(variable))
    ax_hist.grid(True, alpha=0.3)

    fig.tight_layout()
    fig.savefig(out_path, dpi=180)
    plt.close(fig)
