import json
import os
import tempfile
from pathlib import Path
from typing import Any

TASK_FILE_PREFIX = "todos_"


class DataPaths:
    """Layout of the data directory: one file per owner plus two global files."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.archive_dir = self.root / "archive"
        self.credentials_file = self.root / "credentials.json"
        self.sessions_file = self.root / "sessions.json"

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def task_file(self, owner_key: str) -> Path:
        return self.root / f"{TASK_FILE_PREFIX}{owner_key}.json"

    def archive_file(self, owner_key: str, timestamp_ms: int) -> Path:
        return self.archive_dir / f"{TASK_FILE_PREFIX}{owner_key}_{timestamp_ms}.json"

    def has_archive(self, owner_key: str) -> bool:
        if not self.archive_dir.is_dir():
            return False
        prefix = f"{TASK_FILE_PREFIX}{owner_key}_"
        return any(p.name.startswith(prefix) for p in self.archive_dir.iterdir())


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON via temp file + rename so a crash never leaves a truncated file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path: Path, default: Any = None) -> Any:
    """Return parsed JSON, or ``default`` when the file does not exist.

    Corrupt files raise ``json.JSONDecodeError``; callers decide whether that is fatal.
    """
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default
