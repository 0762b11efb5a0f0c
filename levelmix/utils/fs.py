import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

ALLOWED = {".mp3", ".wav", ".flac"}


def allowed_file(filename: str) -> bool:
    return Path(filename).suffix.lower() in ALLOWED


def write_json_atomic(path, obj: Dict[str, Any]) -> None:
    path = str(path)
    fd, tmp = tempfile.mkstemp(
        dir=os.path.dirname(path) or ".", prefix=os.path.basename(path) + ".", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, indent=2)
        os.replace(tmp, path)
    except Exception:
        remove_quietly(tmp)
        raise


def read_json(path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def free_disk_mb(path) -> float:
    os.makedirs(path, exist_ok=True)
    return shutil.disk_usage(path).free / (1024 * 1024)


def remove_quietly(path) -> None:
    if path:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
