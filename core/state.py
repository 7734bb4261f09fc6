"""
JSON snapshot store for the request queue. The whole queue is one JSON
array, rewritten on every mutation through a temp file + os.replace so a
crash never leaves a half-written snapshot behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, List

from pydantic import ValidationError

from core.models import LinkingRequest

log = logging.getLogger(__name__)


class QueueStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> List[LinkingRequest]:
        if not self.path.exists():
            log.info("queue file %s does not exist, starting with empty queue", self.path)
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise ValueError("queue file must hold a JSON array")
            requests = [LinkingRequest.model_validate(item) for item in data]
        except (OSError, ValueError, ValidationError) as exc:
            log.warning("failed to load queue from %s, starting empty: %s", self.path, exc)
            return []
        log.info("loaded %d requests from %s", len(requests), self.path)
        return requests

    def persist(self, requests: Iterable[LinkingRequest]) -> bool:
        snapshot = [r.to_record() for r in requests]
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = Path(tmp.name)
                json.dump(snapshot, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            log.warning("failed to persist queue to %s: %s", self.path, exc)
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            return False
        log.debug("saved %d requests to %s", len(snapshot), self.path)
        return True
