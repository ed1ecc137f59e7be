import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import structlog
from pydantic import ValidationError

from perfbench.errors import IncompatibleSchema, StoreReadFailure, StoreWriteFailure
from perfbench.models import SUPPORTED_SCHEMA_VERSIONS, RunRecord, validate_label

logger = structlog.get_logger(__name__)

_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


class ResultStore:
    """Append-only RunRecord files, one directory per label.

    File names are UTC write stamps, so lexical order is write order and the
    newest file is the one ``latest`` returns.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, label: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(label, threading.Lock())

    def _label_dir(self, label: str) -> Path:
        return self._root / validate_label(label)

    def put(self, record: RunRecord) -> Path:
        """Persist a record as a new file; existing files are never touched."""
        payload = record.model_dump_json(indent=2)
        with self._lock_for(record.label):
            try:
                directory = self._label_dir(record.label)
                directory.mkdir(parents=True, exist_ok=True)
                path = self._write_new(directory, payload)
            except OSError as e:
                raise StoreWriteFailure(f"could not write {record.label} record under {self._root}: {e}") from e
        logger.info("Stored run record", label=record.label, path=str(path))
        return path

    @staticmethod
    def _write_new(directory: Path, payload: str) -> Path:
        while True:
            path = directory / f"{datetime.now(timezone.utc).strftime(_STAMP_FORMAT)}.json"
            try:
                with path.open("x", encoding="utf-8") as f:
                    f.write(payload)
            except FileExistsError:
                continue
            except OSError:
                path.unlink(missing_ok=True)
                raise
            return path

    def history(self, label: str) -> List[Path]:
        """Record files for ``label``, oldest first."""
        directory = self._label_dir(label)
        if not directory.is_dir():
            return []
        return sorted(directory.glob("*.json"))

    def latest(self, label: str) -> Optional[RunRecord]:
        files = self.history(label)
        if not files:
            return None
        return self.load(files[-1])

    def prune(self, label: str, keep: int) -> List[Path]:
        """Delete all but the newest ``keep`` records for ``label``."""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        with self._lock_for(label):
            files = self.history(label)
            doomed = files[: max(0, len(files) - keep)]
            for path in doomed:
                path.unlink()
        logger.info("Pruned run records", label=label, removed=len(doomed), kept=len(files) - len(doomed))
        return doomed

    @staticmethod
    def load(path: Path) -> RunRecord:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StoreReadFailure(f"could not read {path}: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise IncompatibleSchema(f"{path}: not valid JSON: {e}") from e

        version = data.get("schema_version") if isinstance(data, dict) else None
        # bool is an int subclass and True == 1
        if type(version) is not int or version not in SUPPORTED_SCHEMA_VERSIONS:
            raise IncompatibleSchema(
                f"{path}: schema_version {version!r} is not supported "
                f"(supported: {sorted(SUPPORTED_SCHEMA_VERSIONS)})"
            )
        try:
            return RunRecord.model_validate(data)
        except ValidationError as e:
            raise IncompatibleSchema(f"{path}: record does not match schema v{version}: {e}") from e
