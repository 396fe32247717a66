"""JSON configuration under assets/config/."""

import json
from pathlib import Path
from typing import Any

from splatrig.constants import CONFIG_DIR


def load_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def load_config(name: str) -> Any:
    """Parsed ``assets/config/<name>``.

    Raises FileNotFoundError naming the config directory when the file is
    absent (for example when the package is installed without its assets).
    """
    path = CONFIG_DIR / name
    if not path.is_file():
        raise FileNotFoundError(f"Config {name!r} not found in {CONFIG_DIR}")
    return load_json(path)
