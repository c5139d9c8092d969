"""JSON file-based storage adapter — implements StoragePort."""

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import List


def _log(msg: str):
    print(msg, file=sys.stderr)


class JsonStorage:
    """One JSON list per key, written atomically (temp file + replace)."""

    def __init__(self, storage_dir: str = "memory"):
        self._storage_dir = Path(storage_dir)
        self._storage_dir.mkdir(parents=True, exist_ok=True)

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    def path(self, key: str) -> Path:
        return self._storage_dir / f"{key}.json"

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self._storage_dir.glob("*.json"))

    def load(self, key: str) -> list:
        path = self.path(key)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            _log(f"[JsonStorage] could not read {path.name}: {e}")
            return []
        if not isinstance(raw, list):
            _log(f"[JsonStorage] {path.name} is not a list; ignoring")
            return []
        return raw

    def save(self, key: str, data: list) -> None:
        path = self.path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data, ensure_ascii=False, indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, str(path))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def delete(self, key: str) -> bool:
        try:
            self.path(key).unlink()
            return True
        except FileNotFoundError:
            return False
