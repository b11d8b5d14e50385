"""Shared constants, error types and loaders for the explanation pipelines."""

from __future__ import annotations

import logging
import tarfile
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

import joblib
import pandas as pd

PREDICTORS = [
    "sex",
    "age_range",
    "vehicle_age",
    "make",
    "vehicle_category",
    "region",
]
OUTCOME_COL = "loss_per_exposure"
WEIGHT_COL = "exposure"
DEFAULT_LABEL = "neural_net"
DEFAULT_BATCH_SIZE = 10000

# Portuguese level names from the source data shown in English on the figures.
DISPLAY_ALIASES = {
    "Entre 18 e 25 anos": "18-25",
    "Passeio nacional": "Domestic passenger",
    "Masculino": "Male",
}

MODEL_FILE_NAMES = ("model.joblib", "model.pkl")
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar")

LOGGER = logging.getLogger(__name__)


class MissingPredictorError(ValueError):
    """A required predictor column is absent from the rows being scored."""


class ShapeMismatchError(ValueError):
    """The model rejected the input schema or returned the wrong number of predictions."""


class UnsupportedPredictorError(ValueError):
    """Partial dependence was requested on a predictor it cannot sweep."""


def clean_columns(cols: Iterable[object]) -> list[str]:
    return [" ".join(str(c).strip().split()) for c in cols]


def require_columns(frame: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [col for col in columns if col not in frame.columns]
    if missing:
        raise MissingPredictorError(f"Missing required column(s): {missing}")


def is_numeric_predictor(values: pd.Series) -> bool:
    return bool(pd.api.types.is_numeric_dtype(values)) and not pd.api.types.is_bool_dtype(values)


def predictor_levels(values: pd.Series) -> list[Any]:
    """Observed level set of a categorical predictor, in first-seen order."""
    return pd.Series(values).dropna().drop_duplicates().tolist()


def humanize(name: str) -> str:
    return name.replace("_", " ").strip().title()


def load_eval_table(
    data_path: Path,
    *,
    predictors: Sequence[str] = PREDICTORS,
    outcome_col: str = OUTCOME_COL,
    weight_col: str = WEIGHT_COL,
) -> pd.DataFrame:
    if not data_path.exists():
        raise FileNotFoundError(f"Missing evaluation table: {data_path}")

    df = pd.read_csv(data_path)
    df.columns = clean_columns(list(df.columns))
    require_columns(df, list(predictors) + [outcome_col, weight_col])
    return df


def _is_archive(path: Path) -> bool:
    return any(path.name.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def _strip_archive_suffix(path: Path) -> Path:
    for suffix in ARCHIVE_SUFFIXES:
        if path.name.endswith(suffix):
            return path.with_name(path.name[: -len(suffix)])
    return path


def extract_model_archive(archive_path: Path, exdir: Path | None = None) -> Path:
    """Unpack a model archive next to itself and return the extracted model directory."""
    if not archive_path.exists():
        raise FileNotFoundError(f"Missing model archive: {archive_path}")
    exdir = exdir or archive_path.parent
    exdir.mkdir(parents=True, exist_ok=True)
    LOGGER.info("Extracting %s into %s", archive_path, exdir)
    with tarfile.open(archive_path) as tar:
        # Extraction filters landed in 3.10.12, 3.11.4 and 3.12.
        if hasattr(tarfile, "data_filter"):
            tar.extractall(exdir, filter="data")
        else:
            tar.extractall(exdir)

    target = exdir / _strip_archive_suffix(archive_path).name
    return target if target.exists() else exdir


def _model_file_in(directory: Path) -> Path:
    for name in MODEL_FILE_NAMES:
        candidate = directory / name
        if candidate.exists():
            return candidate
    found = sorted(directory.glob("*.joblib")) + sorted(directory.glob("*.pkl"))
    if len(found) == 1:
        return found[0]
    raise FileNotFoundError(f"No serialized model found in {directory} (expected one of {list(MODEL_FILE_NAMES)})")


def load_model(model_path: Path) -> Any:
    if _is_archive(model_path):
        model_path = extract_model_archive(model_path)
    if not model_path.exists():
        raise FileNotFoundError(f"Missing model artifact: {model_path}")
    if model_path.is_dir():
        model_path = _model_file_in(model_path)

    model = joblib.load(model_path)
    if not callable(getattr(model, "predict", None)):
        raise TypeError(f"Loaded object from {model_path} has no callable predict().")
    return model
