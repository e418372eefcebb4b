"""YAML reference data shipped with the bot (catalog, delivery zones)."""

from functools import lru_cache
from pathlib import Path

import yaml

DATA_DIR = Path(__file__).resolve().parent.parent / "data"


@lru_cache(maxsize=8)
def load_yaml(path: Path) -> dict:
    """Top-level mapping of a YAML file; {} when the file is missing or not a mapping."""
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}
