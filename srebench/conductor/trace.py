"""Append-only execution trace of one scenario run."""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from srebench.observer.snapshot import Snapshot, freeze, thaw

logger = logging.getLogger("all.srebench.trace")

# trace actions
TRANSITION = "transition"
STEP = "step"
SNAPSHOT = "snapshot"
FAULT_INJECTED = "fault_injected"
REMEDIATION = "remediation"
NOTE = "note"


@dataclass(frozen=True)
class TraceEntry:
    seq: int
    timestamp: float
    action: str
    state: str
    step_index: int | None = None
    observed_state: Snapshot | None = None
    error: str | None = None
    detail: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        object.__setattr__(self, "detail", freeze(self.detail or {}))

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "timestamp": round(self.timestamp, 3),
            "stepIndex": self.step_index,
            "action": self.action,
            "state": self.state,
            "observedState": self.observed_state.to_dict() if self.observed_state else None,
            "error": self.error,
            "detail": thaw(self.detail),
        }


class ExecutionTrace:
    """Ordered log of everything the engine did and saw. Entries are never rewritten."""

    def __init__(self, run_id: str, scenario_id: str, clock=time.time):
        self.run_id = run_id
        self.scenario_id = scenario_id
        self._clock = clock
        self._entries: list[TraceEntry] = []
        self._lock = threading.Lock()

    def append(
        self,
        action: str,
        state: str,
        step_index: int | None = None,
        observed_state: Snapshot | None = None,
        error: str | None = None,
        **detail,
    ) -> TraceEntry:
        with self._lock:
            entry = TraceEntry(
                seq=len(self._entries),
                timestamp=self._clock(),
                action=action,
                state=state,
                step_index=step_index,
                observed_state=observed_state,
                error=error,
                detail=detail,
            )
            self._entries.append(entry)
        return entry

    @property
    def entries(self) -> tuple[TraceEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self):
        return iter(self.entries)

    def transitions(self) -> list[TraceEntry]:
        return [e for e in self.entries if e.action == TRANSITION]

    def first(self, action: str, **match) -> TraceEntry | None:
        for e in self.entries:
            if e.action == action and all(e.detail.get(k) == v for k, v in match.items()):
                return e
        return None

    def last_snapshot(self) -> Snapshot | None:
        for e in reversed(self.entries):
            if e.observed_state is not None:
                return e.observed_state
        return None

    def to_list(self) -> list[dict]:
        return [e.to_dict() for e in self.entries]

    def persist(self, path: Path) -> Path:
        """Write the trace as JSON lines. Called at the end of a run, whatever the outcome."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            for entry in self.entries:
                record = {"runId": self.run_id, "scenarioId": self.scenario_id, **entry.to_dict()}
                f.write(json.dumps(record, default=str))
                f.write("\n")
        logger.info(f"Trace written to {path} ({len(self)} entries)")
        return path
