import json
import os
import time
from pathlib import Path
from typing import List, Optional, Tuple

from loguru import logger as log
from pydantic import ValidationError

from common import global_config
from src.services.meme.templates.models import TemplateInfo


class TemplateSnapshotStore:
    """Reads and writes the local template snapshot.

    File layout: {"fetchedAtEpochMillis": int, "templates": [TemplateInfo, ...]}
    """

    def __init__(self, snapshot_file: Optional[Path] = None):
        if snapshot_file is None:
            self.snapshot_file = global_config.snapshot_file()
        else:
            self.snapshot_file = snapshot_file

    def load(self) -> Tuple[List[TemplateInfo], Optional[int]]:
        """Return (templates, fetched_at_ms); a missing or corrupt file reads as empty."""
        if not self.snapshot_file.exists():
            return [], None

        try:
            with open(self.snapshot_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            templates = [
                TemplateInfo.model_validate(t) for t in data.get("templates", [])
            ]
            fetched_at = data.get("fetchedAtEpochMillis")
        except (OSError, ValueError, AttributeError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            log.warning(f"Ignoring unreadable template snapshot {self.snapshot_file}: {e}")
            return [], None

        return templates, fetched_at

    def save(self, templates: List[TemplateInfo], fetched_at: Optional[int] = None) -> int:
        """Atomically replace the snapshot. Returns the timestamp written."""
        if fetched_at is None:
            fetched_at = int(time.time() * 1000)

        payload = {
            "fetchedAtEpochMillis": fetched_at,
            "templates": [t.model_dump(mode="json") for t in templates],
        }
        self.snapshot_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.snapshot_file.with_suffix(self.snapshot_file.suffix + ".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp_file, self.snapshot_file)

        log.info(f"Saved template snapshot with {len(templates)} templates")
        return fetched_at
