"""Atomic JSON writes: write a sibling .tmp file, then os.replace it over the target."""

import json
import os
from pathlib import Path
from typing import Any


def write_json_atomic(path: Path, payload: Any, indent: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=indent), encoding="utf-8")
    os.replace(tmp_path, path)
