"""Shared path helpers for the explanation entrypoint."""

from __future__ import annotations

from pathlib import Path

DEFAULT_DATA_CANDIDATES = (
    Path("data/input/toy-model-testing-data.csv"),
    Path("data/raw/toy-model-testing-data.csv"),
)
DEFAULT_MODEL_CANDIDATES = (
    Path("model_artifacts/toy-model"),
    Path("model_artifacts/toy-model.tar.gz"),
    Path("model_artifacts/toy-model.joblib"),
)
DEFAULT_FIGURES_DIR = Path("manuscript/figures")


def project_root() -> Path:
    try:
        return Path(__file__).resolve().parents[3]
    except Exception:
        return Path.cwd()


def _first_existing(explicit_path: Path | None, candidates: tuple[Path, ...]) -> Path:
    if explicit_path is not None:
        return explicit_path

    root = project_root()
    for rel_path in candidates:
        candidate = root / rel_path
        if candidate.exists():
            return candidate

    return root / candidates[0]


def resolve_data_path(explicit_path: Path | None) -> Path:
    return _first_existing(explicit_path, DEFAULT_DATA_CANDIDATES)


def resolve_model_path(explicit_path: Path | None) -> Path:
    return _first_existing(explicit_path, DEFAULT_MODEL_CANDIDATES)


def default_figures_dir() -> Path:
    return project_root() / DEFAULT_FIGURES_DIR
