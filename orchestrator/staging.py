"""File-backed selection sink (staging hint and final export report)."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from config import PipelineSettings
from core import SelectionItem, SelectionReport
from utils.exceptions import ExportRejectedError

from .gateway import report_payload, selection_payload


logger = logging.getLogger(__name__)


def coerce_numeric_ids(rows: List[Dict[str, Any]]) -> List[int]:
    """Turn numeric-string ids into ints in place; return indexes still lacking a numeric id."""
    invalid: List[int] = []
    for index, row in enumerate(rows):
        value = row.get("id")
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
            row["id"] = value
        if not isinstance(value, int) or isinstance(value, bool):
            invalid.append(index)
    return invalid


class FileSelectionSink:
    """Writes `{selected, stagedAt}` / the export report to one JSON file.

    Staging is last-writer-wins. Export refuses to write unless every item
    carries a numeric storage id.
    """

    def __init__(self, settings: Optional[PipelineSettings] = None, *, path: Optional[Path] = None) -> None:
        cfg = settings or PipelineSettings()
        self.path = Path(path) if path else Path(cfg.staging_dir) / cfg.selection_file

    def _write(self, payload: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8"))

    async def stage(self, selection: Sequence[SelectionItem], *, run_token: str) -> None:
        payload = {
            "selected": selection_payload(selection),
            "token": run_token,
            "stagedAt": datetime.now(timezone.utc).isoformat(),
        }
        self._write(payload)
        logger.info("selection_staged path=%s count=%s", self.path, len(selection))

    async def export(self, report: SelectionReport) -> None:
        payload = report_payload(report)
        invalid = coerce_numeric_ids(payload["selected"])
        if invalid:
            raise ExportRejectedError(
                "selection export requires a numeric id for every item",
                invalid_indexes=invalid,
            )
        payload["exportedAt"] = datetime.now(timezone.utc).isoformat()
        self._write(payload)
        logger.info("selection_exported path=%s count=%s", self.path, len(payload["selected"]))
