from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from sklearn.compose import ColumnTransformer
from sklearn.linear_model import LinearRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder

from loss_cost_explain.pipelines.common import MissingPredictorError, ShapeMismatchError
from loss_cost_explain.pipelines.scoring import ScoringAdapter, build_explainer

PREDICTORS = ["sex", "region", "vehicle_age"]


def _frame(n_rows: int = 23) -> pd.DataFrame:
    idx = np.arange(n_rows)
    return pd.DataFrame(
        {
            "sex": np.where(idx % 2 == 0, "Masculino", "Feminino"),
            "region": np.array(["SP", "RJ", "MG"])[idx % 3],
            "vehicle_age": (idx % 11).astype(float),
            "loss_per_exposure": 100.0 + 3.0 * idx,
            "exposure": 1.0,
        }
    )


def _fitted_pipeline(frame: pd.DataFrame) -> Pipeline:
    pipeline = Pipeline(
        steps=[
            (
                "preprocess",
                ColumnTransformer(
                    transformers=[
                        ("cat", OneHotEncoder(handle_unknown="ignore"), ["sex", "region"]),
                        ("num", "passthrough", ["vehicle_age"]),
                    ]
                ),
            ),
            ("model", LinearRegression()),
        ]
    )
    return pipeline.fit(frame[PREDICTORS], frame["loss_per_exposure"])


class ColumnOutputModel:
    def predict(self, x: pd.DataFrame) -> np.ndarray:
        return x[["vehicle_age"]].to_numpy(dtype=float) * 2.0


class ShortOutputModel:
    def predict(self, x: pd.DataFrame) -> np.ndarray:
        return np.zeros(max(len(x) - 1, 0))


def test_score_is_invariant_to_batch_size() -> None:
    frame = _frame()
    adapter = ScoringAdapter(model=_fitted_pipeline(frame), predictors=PREDICTORS)

    reference = adapter.score(frame, batch_size=len(frame))
    for size in (1, 4, 7, 1000):
        assert np.allclose(adapter.score(frame, batch_size=size), reference)


def test_score_preserves_length_and_order() -> None:
    frame = _frame()
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=PREDICTORS, batch_size=5)
    out = adapter.score(frame.iloc[::-1])
    assert out.tolist() == (frame["vehicle_age"].iloc[::-1] * 2.0).tolist()


def test_score_flattens_single_column_output() -> None:
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=["vehicle_age"])
    out = adapter.score(pd.DataFrame({"vehicle_age": [1.0, 2.0]}))
    assert out.ndim == 1
    assert out.tolist() == [2.0, 4.0]


def test_score_accepts_single_row_series() -> None:
    frame = _frame()
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=PREDICTORS)
    assert adapter.score(frame.iloc[3]).tolist() == [frame["vehicle_age"].iloc[3] * 2.0]


def test_score_accepts_list_of_rows() -> None:
    frame = _frame(6)
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=PREDICTORS, batch_size=4)
    expected = adapter.score(frame)

    as_dicts = frame.to_dict(orient="records")
    as_series = [row for _, row in frame.iterrows()]
    assert adapter.score(as_dicts).tolist() == expected.tolist()
    assert adapter.score(as_series).tolist() == expected.tolist()


def test_score_list_of_dicts_for_single_predictor() -> None:
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=["vehicle_age"])
    out = adapter.score([{"vehicle_age": 1.0}, {"vehicle_age": 5.0}])
    assert out.tolist() == [2.0, 10.0]


def test_score_rejects_unsupported_row_container() -> None:
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=["vehicle_age"])
    with pytest.raises(TypeError):
        adapter.score("vehicle_age")


def test_score_missing_predictor_raises() -> None:
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=PREDICTORS)
    with pytest.raises(MissingPredictorError):
        adapter.score(_frame().drop(columns=["region"]))


def test_score_wrong_prediction_count_raises() -> None:
    adapter = ScoringAdapter(model=ShortOutputModel(), predictors=PREDICTORS)
    with pytest.raises(ShapeMismatchError):
        adapter.score(_frame())


def test_score_schema_rejected_by_model_raises() -> None:
    x = pd.DataFrame({"a": [1.0, 2.0, 3.0], "b": [0.0, 1.0, 0.0]})
    model = LinearRegression().fit(x, [1.0, 2.0, 3.0])
    adapter = ScoringAdapter(model=model, predictors=["a", "c"])
    with pytest.raises(ShapeMismatchError):
        adapter.score(pd.DataFrame({"a": [1.0], "c": [0.0]}))


def test_invalid_batch_size_raises() -> None:
    with pytest.raises(ValueError):
        ScoringAdapter(model=ColumnOutputModel(), predictors=PREDICTORS, batch_size=0)
    adapter = ScoringAdapter(model=ColumnOutputModel(), predictors=PREDICTORS)
    with pytest.raises(ValueError):
        adapter.score(_frame(), batch_size=0)


def test_build_explainer_keeps_predictors_outcome_and_weights() -> None:
    frame = _frame()
    explainer = build_explainer(ColumnOutputModel(), frame, predictors=PREDICTORS, batch_size=4)

    assert explainer.data.columns.tolist() == PREDICTORS
    assert explainer.y.tolist() == frame["loss_per_exposure"].tolist()
    assert explainer.weights.tolist() == frame["exposure"].tolist()
    assert explainer.label == "neural_net"
    assert explainer.adapter.batch_size == 4


def test_build_explainer_rejects_negative_weights() -> None:
    frame = _frame()
    frame.loc[0, "exposure"] = -1.0
    with pytest.raises(ValueError):
        build_explainer(ColumnOutputModel(), frame, predictors=PREDICTORS)


def test_build_explainer_missing_weight_column_raises() -> None:
    with pytest.raises(MissingPredictorError):
        build_explainer(ColumnOutputModel(), _frame().drop(columns=["exposure"]), predictors=PREDICTORS)
