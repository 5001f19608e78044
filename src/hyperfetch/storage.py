"""On-disk store for queued commands awaiting settlement."""

from __future__ import annotations

import json
import logging
import os
import uuid
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hyperfetch.command import Command

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".tmp-{path.name}-{uuid.uuid4().hex}")
    try:
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError:
        with suppress(FileNotFoundError):
            tmp_path.unlink()
        raise


def _atomic_write_json(path: Path, value: Any) -> None:
    payload = json.dumps(value, sort_keys=True, ensure_ascii=True, indent=2) + "\n"
    _atomic_write_text(path, payload)


class DumpStore:
    """One JSON file per admitted request: ``<root>/<request_id>.json``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, request_id: str) -> Path:
        return self.root / f"{request_id}.json"

    def save(self, request_id: str, queue: str, command: Command) -> Path:
        path = self.path_for(request_id)
        _atomic_write_json(
            path,
            {"schema_version": SCHEMA_VERSION, "queue": queue, "command": command.dump()},
        )
        return path

    def delete(self, request_id: str) -> None:
        with suppress(FileNotFoundError):
            self.path_for(request_id).unlink()

    def load(self) -> list[tuple[str, str, dict[str, Any]]]:
        """Return ``(request_id, queue, command_dump)`` ordered by file mtime."""
        records: list[tuple[str, str, dict[str, Any]]] = []
        paths = sorted(self.root.glob("*.json"), key=lambda item: item.stat().st_mtime_ns)
        for path in paths:
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("skipping unreadable queue dump %s", path)
                continue
            if not isinstance(payload, dict) or not isinstance(payload.get("command"), dict):
                logger.warning("skipping malformed queue dump %s", path)
                continue
            records.append((path.stem, str(payload.get("queue", "")), payload["command"]))
        return records
