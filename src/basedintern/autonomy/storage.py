from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


READ_OK = "ok"
READ_NOT_FOUND = "not_found"
READ_EMPTY = "empty"
READ_PARSE_ERROR = "parse_error"
READ_PERMISSION_ERROR = "permission_error"
READ_IO_ERROR = "io_error"


class StateDirectoryError(Exception):
    """The directory holding the state file could not be created."""


@dataclass
class ReadResult:
    kind: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind == READ_OK


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + ".bak")


def read_document(path: Path) -> ReadResult:
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = f.read()
    except FileNotFoundError:
        return ReadResult(kind=READ_NOT_FOUND)
    except PermissionError as e:
        return ReadResult(kind=READ_PERMISSION_ERROR, error=str(e))
    except (OSError, UnicodeDecodeError) as e:
        return ReadResult(kind=READ_IO_ERROR, error=str(e))

    if not raw.strip():
        return ReadResult(kind=READ_EMPTY)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return ReadResult(kind=READ_PARSE_ERROR, error=str(e))
    if not isinstance(data, dict):
        return ReadResult(kind=READ_PARSE_ERROR, error=f"expected object, got {type(data).__name__}")
    return ReadResult(kind=READ_OK, data=data)


def ensure_directory(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StateDirectoryError(f"cannot create state directory {path.parent}: {e}") from e


def write_document_atomic(path: Path, doc: Dict[str, Any]) -> None:
    # Only os.replace touches the visible file; readers see the old or the new document.
    payload = json.dumps(doc, indent=2, sort_keys=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
