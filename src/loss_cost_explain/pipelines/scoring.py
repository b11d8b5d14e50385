"""Batched scoring adapter and the explainer bundle shared by all pipelines."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from loss_cost_explain.pipelines.common import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_LABEL,
    OUTCOME_COL,
    PREDICTORS,
    WEIGHT_COL,
    ShapeMismatchError,
    require_columns,
)

LOGGER = logging.getLogger(__name__)


def as_frame(rows: pd.DataFrame | pd.Series | dict[str, Any] | Sequence[Any]) -> pd.DataFrame:
    """Coerce one row (Series or dict) or a sequence of rows into a DataFrame."""
    if isinstance(rows, pd.DataFrame):
        return rows
    if isinstance(rows, pd.Series):
        return rows.to_frame().T.infer_objects()
    if isinstance(rows, dict):
        return pd.DataFrame([rows])
    if isinstance(rows, Sequence) and not isinstance(rows, (str, bytes)):
        records = [row.to_dict() if isinstance(row, pd.Series) else row for row in rows]
        return pd.DataFrame(records)
    raise TypeError(f"Cannot score rows of type {type(rows).__name__}.")


@dataclass
class ScoringAdapter:
    """Wrap a fitted model so every pipeline scores rows the same way.

    Only the declared predictor columns are passed to the model, in declared
    order, and rows are sent in chunks of at most ``batch_size``. The chunk size
    bounds peak memory only; predictions do not depend on it.
    """

    model: Any
    predictors: list[str] = field(default_factory=lambda: list(PREDICTORS))
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self) -> None:
        if not callable(getattr(self.model, "predict", None)):
            raise TypeError("Model must expose a callable predict().")
        self.predictors = list(self.predictors)
        if int(self.batch_size) < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

    def _predict_chunk(self, chunk: pd.DataFrame) -> np.ndarray:
        try:
            raw = self.model.predict(chunk)
        except (KeyError, ValueError) as exc:
            raise ShapeMismatchError(f"Model rejected input with columns {list(chunk.columns)}: {exc}") from exc

        preds = np.asarray(raw, dtype=float)
        # Keras-style regressors return an (n, 1) column.
        if preds.ndim == 2 and preds.shape[1] == 1:
            preds = preds[:, 0]
        if preds.ndim != 1 or len(preds) != len(chunk):
            raise ShapeMismatchError(
                f"Model returned predictions of shape {preds.shape} for {len(chunk)} input rows."
            )
        return preds

    def score(
        self,
        rows: pd.DataFrame | pd.Series | dict[str, Any] | Sequence[Any],
        batch_size: int | None = None,
    ) -> np.ndarray:
        size = int(self.batch_size if batch_size is None else batch_size)
        if size < 1:
            raise ValueError(f"batch_size must be >= 1, got {size}")

        frame = as_frame(rows)
        require_columns(frame, self.predictors)
        x = frame[self.predictors]
        if x.empty:
            return np.array([], dtype=float)

        chunks: list[np.ndarray] = []
        for begin in range(0, len(x), size):
            chunk = x.iloc[begin : begin + size]
            LOGGER.debug("Scoring rows %d-%d", begin, begin + len(chunk) - 1)
            chunks.append(self._predict_chunk(chunk))
        return np.concatenate(chunks)


@dataclass
class Explainer:
    adapter: ScoringAdapter
    data: pd.DataFrame
    y: pd.Series
    weights: pd.Series
    label: str = DEFAULT_LABEL

    @property
    def predictors(self) -> list[str]:
        return self.adapter.predictors

    def predict(self, rows: pd.DataFrame | pd.Series | dict[str, Any] | Sequence[Any]) -> np.ndarray:
        return self.adapter.score(rows)


def build_explainer(
    model: Any,
    eval_table: pd.DataFrame,
    *,
    predictors: Sequence[str] = PREDICTORS,
    outcome_col: str = OUTCOME_COL,
    weight_col: str = WEIGHT_COL,
    batch_size: int = DEFAULT_BATCH_SIZE,
    label: str = DEFAULT_LABEL,
) -> Explainer:
    predictors = list(predictors)
    require_columns(eval_table, predictors + [outcome_col, weight_col])

    y = pd.to_numeric(eval_table[outcome_col], errors="coerce").reset_index(drop=True)
    weights = pd.to_numeric(eval_table[weight_col], errors="coerce").reset_index(drop=True)
    if y.isna().any():
        raise ValueError(f"Outcome column '{outcome_col}' has {int(y.isna().sum())} non-numeric value(s).")
    if weights.isna().any() or (weights < 0).any():
        raise ValueError(f"Weight column '{weight_col}' must be numeric and non-negative.")

    adapter = ScoringAdapter(model=model, predictors=predictors, batch_size=batch_size)
    data = eval_table[predictors].reset_index(drop=True)
    return Explainer(adapter=adapter, data=data, y=y, weights=weights, label=label)
