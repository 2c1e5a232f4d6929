import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MetadataLedger:
    """Append-only JSONL file, one upload record per line."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @contextmanager
    def _append(self):
        handle = self.path.open("a", encoding="utf-8")
        try:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        finally:
            handle.close()

    def append(self, entry: dict) -> None:
        line = json.dumps(entry, ensure_ascii=False, separators=(",", ":")) + "\n"
        with self._append() as handle:
            # One write per record so concurrent appenders never interleave lines.
            handle.write(line)

    def entries(self) -> list[dict]:
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

    def stored_names(self) -> set[str]:
        return {entry["savedAs"] for entry in self.entries()}
