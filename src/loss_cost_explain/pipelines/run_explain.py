"""Produce the partial dependence, feature importance and break-down figures.

Run:
  python src/loss_cost_explain/pipelines/run_explain.py --seed 2020

Outputs (under ./manuscript/figures/ by default):
  - pdp-plot.png, pdp_<variable>.csv
  - fi-plot.png, feature_importance_records.csv, feature_importance_summary.csv
  - breakdown-plot.png, breakdown.csv
  - explain_summary.json

Sampling is unseeded unless --seed is given, so figures vary run to run.
"""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pandas as pd

from loss_cost_explain.pipelines import breakdown as bd
from loss_cost_explain.pipelines import feature_importance as fi
from loss_cost_explain.pipelines import partial_dependence as pdp
from loss_cost_explain.pipelines.common import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_LABEL,
    PREDICTORS,
    load_eval_table,
    load_model,
)
from loss_cost_explain.pipelines.paths import default_figures_dir, resolve_data_path, resolve_model_path
from loss_cost_explain.pipelines.scoring import Explainer, build_explainer

PDP_FIGURE = "pdp-plot.png"
FI_FIGURE = "fi-plot.png"
BREAKDOWN_FIGURE = "breakdown-plot.png"

LOGGER = logging.getLogger(__name__)


def _offset_seed(seed: int | None, offset: int) -> int | None:
    return None if seed is None else int(seed) + offset


def run_partial_dependence(
    explainer: Explainer,
    out_dir: Path,
    *,
    variable: str,
    grid: list[float],
    n_samples: int,
    seed: int | None,
) -> dict[str, str]:
    pdp_df = pdp.compute_partial_dependence(explainer, variable, grid, n_samples=n_samples, seed=seed)
    pdp.plot_partial_dependence(pdp_df, explainer.data[variable], out_dir / PDP_FIGURE)
    csv_path = out_dir / f"pdp_{variable}.csv"
    pdp_df.to_csv(csv_path, index=False)
    return {"figure": str(out_dir / PDP_FIGURE), "table": str(csv_path)}


def run_feature_importance(
    explainer: Explainer,
    out_dir: Path,
    *,
    variables: list[str],
    n_repeats: int,
    n_sample: int,
    seed: int | None,
) -> dict[str, str]:
    records = fi.compute_feature_importance(
        explainer,
        loss_function=fi.weighted_rmse,
        variables=variables,
        n_repeats=n_repeats,
        n_sample=n_sample,
        seed=seed,
    )
    summary = fi.summarize_feature_importance(records)
    fi.plot_feature_importance(summary, out_dir / FI_FIGURE)
    records.to_csv(out_dir / "feature_importance_records.csv", index=False)
    summary.to_csv(out_dir / "feature_importance_summary.csv", index=False)
    return {
        "figure": str(out_dir / FI_FIGURE),
        "records": str(out_dir / "feature_importance_records.csv"),
        "summary": str(out_dir / "feature_importance_summary.csv"),
    }


def run_break_down(
    explainer: Explainer,
    eval_table: pd.DataFrame,
    out_dir: Path,
    *,
    row_index: int,
    seed: int | None,
) -> dict[str, str]:
    if not 0 <= row_index < len(eval_table):
        raise IndexError(f"Row {row_index} is outside the evaluation table ({len(eval_table)} rows).")
    sample_row = eval_table.iloc[[row_index]][explainer.predictors]
    display_df = bd.prepare_breakdown_display(bd.compute_break_down(explainer, sample_row, seed=seed))
    bd.plot_break_down(display_df, out_dir / BREAKDOWN_FIGURE)
    display_df.to_csv(out_dir / "breakdown.csv", index=False)
    return {"figure": str(out_dir / BREAKDOWN_FIGURE), "table": str(out_dir / "breakdown.csv")}


def run_explain(
    model: Any,
    eval_table: pd.DataFrame,
    out_dir: Path,
    *,
    seed: int | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    predictors: list[str] | None = None,
    pdp_variable: str = pdp.DEFAULT_PDP_VARIABLE,
    pdp_grid: list[float] | None = None,
    pdp_samples: int = pdp.DEFAULT_PDP_SAMPLES,
    fi_repeats: int = fi.DEFAULT_REPEATS,
    fi_samples: int = fi.DEFAULT_FI_SAMPLES,
    breakdown_row: int = 0,
    label: str = DEFAULT_LABEL,
) -> dict[str, Any]:
    """Run the three pipelines independently; a failing one does not stop the others."""
    predictors = list(predictors or PREDICTORS)
    if pdp_grid is None:
        pdp_grid = pdp.make_grid(pdp.DEFAULT_GRID_START, pdp.DEFAULT_GRID_STOP, pdp.DEFAULT_GRID_STEP).tolist()

    explainer = build_explainer(model, eval_table, predictors=predictors, batch_size=batch_size, label=label)
    out_dir.mkdir(parents=True, exist_ok=True)

    stages: dict[str, Callable[[], dict[str, str]]] = {
        "partial_dependence": lambda: run_partial_dependence(
            explainer,
            out_dir,
            variable=pdp_variable,
            grid=pdp_grid,
            n_samples=pdp_samples,
            seed=_offset_seed(seed, 0),
        ),
        "feature_importance": lambda: run_feature_importance(
            explainer,
            out_dir,
            variables=predictors,
            n_repeats=fi_repeats,
            n_sample=fi_samples,
            seed=_offset_seed(seed, 1),
        ),
        "break_down": lambda: run_break_down(
            explainer,
            eval_table,
            out_dir,
            row_index=breakdown_row,
            seed=_offset_seed(seed, 2),
        ),
    }

    outputs: dict[str, dict[str, str]] = {}
    failed: dict[str, str] = {}
    for name, stage in stages.items():
        LOGGER.info("Running %s", name)
        try:
            outputs[name] = stage()
        except Exception as exc:
            LOGGER.exception("%s failed", name)
            failed[name] = f"{type(exc).__name__}: {exc}"

    summary = {
        "config": {
            "seed": seed,
            "batch_size": batch_size,
            "predictors": predictors,
            "pdp_variable": pdp_variable,
            "pdp_grid_points": len(pdp_grid),
            "pdp_samples": pdp_samples,
            "fi_repeats": fi_repeats,
            "fi_samples": fi_samples,
            "breakdown_row": breakdown_row,
            "label": label,
        },
        "n_eval_rows": int(len(eval_table)),
        "outputs": outputs,
        "failed": failed,
    }
    with (out_dir / "explain_summary.json").open("w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    return summary


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate model explanation figures")
    parser.add_argument("--data-path", type=Path, default=None)
    parser.add_argument("--model-path", type=Path, default=None)
    parser.add_argument("--out-dir", type=Path, default=default_figures_dir())
    parser.add_argument("--seed", type=int, default=None, help="Omit for unseeded sampling.")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    parser.add_argument("--pdp-variable", type=str, default=pdp.DEFAULT_PDP_VARIABLE)
    parser.add_argument("--pdp-start", type=float, default=pdp.DEFAULT_GRID_START)
    parser.add_argument("--pdp-stop", type=float, default=pdp.DEFAULT_GRID_STOP)
    parser.add_argument("--pdp-step", type=float, default=pdp.DEFAULT_GRID_STEP)
    parser.add_argument("--pdp-samples", type=int, default=pdp.DEFAULT_PDP_SAMPLES)
    parser.add_argument("--fi-repeats", type=int, default=fi.DEFAULT_REPEATS)
    parser.add_argument("--fi-samples", type=int, default=fi.DEFAULT_FI_SAMPLES)
    parser.add_argument("--breakdown-row", type=int, default=0)
    parser.add_argument("--label", type=str, default=DEFAULT_LABEL)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    args = parse_args(argv)
    data_path = resolve_data_path(args.data_path)
    model_path = resolve_model_path(args.model_path)

    LOGGER.info("Loading evaluation table from %s", data_path)
    eval_table = load_eval_table(data_path)

    LOGGER.info("Loading model from %s", model_path)
    model = load_model(model_path)

    summary = run_explain(
        model,
        eval_table,
        args.out_dir,
        seed=args.seed,
        batch_size=args.batch_size,
        pdp_variable=args.pdp_variable,
        pdp_grid=pdp.make_grid(args.pdp_start, args.pdp_stop, args.pdp_step).tolist(),
        pdp_samples=args.pdp_samples,
        fi_repeats=args.fi_repeats,
        fi_samples=args.fi_samples,
        breakdown_row=args.breakdown_row,
        label=args.label,
    )
    LOGGER.info("Saved explanation outputs to %s", args.out_dir)
    if summary["failed"]:
        raise SystemExit(f"Pipeline(s) failed: {sorted(summary['failed'])}")


if __name__ == "__main__":
    main()
