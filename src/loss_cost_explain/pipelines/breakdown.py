"""Break-down decomposition of a single prediction and its waterfall figure.

The decomposition is greedy and additive: starting from the mean prediction on
the reference data (the intercept), predictors are fixed one at a time to the
observation's values and the shift in mean prediction is credited to the
predictor just fixed. By default predictors are fixed in decreasing order of
their single-variable effect. Once every predictor is fixed all reference rows
equal the observation, so the last cumulative value is the observation's own
prediction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from loss_cost_explain.pipelines.common import DISPLAY_ALIASES, MissingPredictorError, require_columns
from loss_cost_explain.pipelines.partial_dependence import sample_base_rows
from loss_cost_explain.pipelines.scoring import Explainer, as_frame

INTERCEPT = "intercept"
PREDICTION = "prediction"
TOTAL_STEPS = (INTERCEPT, PREDICTION)
SIGN_COLORS = {"negative": "blue", "positive": "orange"}

LOGGER = logging.getLogger(__name__)


def format_value(value: Any) -> str:
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    return str(value)


def _sign(contribution: float) -> str:
    if contribution > 0:
        return "positive"
    if contribution < 0:
        return "negative"
    return "neutral"


def _resolve_order(order: Sequence[str] | None, predictors: list[str], effects: dict[str, float]) -> list[str]:
    if order is None:
        return sorted(predictors, key=lambda v: abs(effects[v]), reverse=True)
    unknown = [v for v in order if v not in predictors]
    if unknown:
        raise MissingPredictorError(f"Unknown predictor(s) in order: {unknown}")
    ordered = list(dict.fromkeys(order))
    return ordered + [v for v in predictors if v not in ordered]


def compute_break_down(
    explainer: Explainer,
    new_observation: pd.DataFrame | pd.Series | dict[str, Any],
    order: Sequence[str] | None = None,
    *,
    n_samples: int | None = None,
    seed: int | None = None,
) -> pd.DataFrame:
    obs = as_frame(new_observation)
    if len(obs) != 1:
        raise ValueError(f"Break-down explains exactly one row, got {len(obs)}.")
    predictors = list(explainer.predictors)
    require_columns(obs, predictors)
    obs = obs[predictors].reset_index(drop=True)

    reference = sample_base_rows(explainer.data, n_samples, seed)
    intercept = float(np.mean(explainer.predict(reference)))
    prediction = float(explainer.predict(obs)[0])

    effects: dict[str, float] = {}
    if order is None:
        for variable in predictors:
            x_mod = reference.copy()
            x_mod[variable] = obs.at[0, variable]
            effects[variable] = float(np.mean(explainer.predict(x_mod))) - intercept
    ordered = _resolve_order(order, predictors, effects)

    n_steps = len(ordered) + 2
    steps: list[dict[str, Any]] = [
        {
            "variable": INTERCEPT,
            "variable_name": INTERCEPT,
            "variable_value": "",
            "contribution": intercept,
            "cumulative": intercept,
            "sign": "neutral",
            "position": n_steps,
        }
    ]

    current = reference.copy()
    cumulative = intercept
    for i, variable in enumerate(ordered, start=1):
        value = obs.at[0, variable]
        current[variable] = value
        if i == len(ordered):
            new_mean = prediction
        else:
            new_mean = float(np.mean(explainer.predict(current)))
        contribution = new_mean - cumulative
        text_value = format_value(value)
        steps.append(
            {
                "variable": f"{variable} = {text_value}",
                "variable_name": variable,
                "variable_value": text_value,
                "contribution": contribution,
                "cumulative": new_mean,
                "sign": _sign(contribution),
                "position": n_steps - i,
            }
        )
        cumulative = new_mean

    steps.append(
        {
            "variable": PREDICTION,
            "variable_name": PREDICTION,
            "variable_value": "",
            "contribution": prediction,
            "cumulative": prediction,
            "sign": "neutral",
            "position": 1,
        }
    )
    LOGGER.info("Break-down: intercept=%.4f prediction=%.4f over %d predictors", intercept, prediction, len(ordered))

    out = pd.DataFrame(steps)
    out["model_label"] = explainer.label
    return out


def substitute_aliases(values: pd.Series, aliases: Mapping[str, str] = DISPLAY_ALIASES) -> pd.Series:
    """Exact-match replacement; values without an alias pass through."""
    return values.map(lambda v: aliases.get(v, v))


def prepare_breakdown_display(
    breakdown_df: pd.DataFrame,
    aliases: Mapping[str, str] = DISPLAY_ALIASES,
) -> pd.DataFrame:
    out = breakdown_df.reset_index(drop=True).copy()

    start = out["cumulative"].shift(1)
    start.iloc[0] = out["contribution"].iloc[0]
    out["start"] = start.astype(float)

    interior = ~out["variable_name"].isin(TOTAL_STEPS)
    out["label"] = [
        f"+{c:.2f}" if is_interior and c > 0 else f"{c:.2f}"
        for c, is_interior in zip(out["contribution"], interior, strict=True)
    ]

    out["variable_value"] = substitute_aliases(out["variable_value"], aliases)
    out.loc[interior, "variable"] = out.loc[interior, "variable_name"] + " = " + out.loc[interior, "variable_value"]
    return out


def plot_break_down(display_df: pd.DataFrame, out_path: Path) -> None:
    df = display_df.sort_values("position").reset_index(drop=True)
    lows = np.minimum(df["start"], df["cumulative"])
    highs = np.maximum(df["start"], df["cumulative"])
    x_span = float(highs.max() - lows.min()) or 1.0
    nudge = x_span * 0.01

    fig, ax = plt.subplots(figsize=(9, 0.5 * len(df) + 2))
    for i, row in df.iterrows():
        pos = float(row["position"])
        lo = float(lows.iloc[i])
        width = float(highs.iloc[i]) - lo
        ax.barh(pos, width, left=lo, height=0.8, color=SIGN_COLORS.get(str(row["sign"]), "none"), alpha=0.4)
        if row["variable_name"] in TOTAL_STEPS:
            ax.barh(pos, width, left=lo, height=0.8, fill=False, edgecolor="black")
        else:
            ax.vlines(float(row["cumulative"]), pos - 1.4, pos + 0.4, linestyles="dotted", colors="blue")
        label_x = max(float(row["cumulative"]), float(row["cumulative"]) - float(row["contribution"]))
        ax.text(label_x + nudge, pos, str(row["label"]), va="center", ha="left", color="black")

    ax.set_yticks(df["position"].tolist())
    ax.set_yticklabels(df["variable"].tolist(), fontsize=10)
    ax.set_xlim(float(lows.min()) - x_span * 0.05, float(highs.max()) + x_span * 0.2)
    ax.set_xlabel("Contribution")
    ax.set_ylabel("Variable")
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    fig.savefig(out_path, dpi=180)
    plt.close(fig)
