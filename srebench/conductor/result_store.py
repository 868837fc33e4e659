"""Append-only JSONL store of ScoreReports, shared by every run in a batch."""

import csv
import json
import logging
import os
import threading
from pathlib import Path

logger = logging.getLogger("all.srebench.results")

DEFAULT_FILENAME = "results.jsonl"


def flatten(record: dict, prefix: str = "") -> dict:
    """``{"a": {"b": 1}}`` -> ``{"a.b": 1}``; lists are kept as JSON text."""
    row = {}
    for key, value in record.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            row.update(flatten(value, f"{name}."))
        elif isinstance(value, list):
            row[name] = json.dumps(value, sort_keys=True, default=str)
        else:
            row[name] = value
    return row


class ResultStore:
    def __init__(self, path: Path):
        path = Path(path)
        self.path = path / DEFAULT_FILENAME if path.suffix != ".jsonl" else path
        self._lock = threading.Lock()

    def append(self, report) -> dict:
        record = report.to_dict() if hasattr(report, "to_dict") else dict(report)
        line = (json.dumps(record, sort_keys=True, default=str) + "\n").encode()
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # one write() per record so concurrent writers never interleave lines
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line)
            finally:
                os.close(fd)
        logger.debug(f"Appended {record.get('scenarioId')}/{record.get('runId')} to {self.path}")
        return record

    def read(self) -> list[dict]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path) as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed line {lineno} in {self.path}")
        return records

    def export_csv(self, path: Path) -> int:
        """Write one flattened row per stored report; returns the number of rows."""
        rows = []
        for record in self.read():
            record = dict(record)
            # per-snapshot detail is too wide for a spreadsheet
            record.pop("transitions", None)
            record.pop("predicateDetails", None)
            rows.append(flatten(record))

        fieldnames = sorted({key for row in rows for key in row.keys()})
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=fieldnames)
            writer.writeheader()
            writer.writerows(rows)
        logger.info(f"Exported {len(rows)} result(s) to {path}")
        return len(rows)
