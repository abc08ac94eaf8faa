"""
Checkpoint log for the per-node state machine.

Every node transition (pending -> fetching -> converting -> persisting ->
registered, or -> failed from any active state) is appended to a small JSONL
log, so an interrupted run can tell which nodes were mid-flight.
The log is compacted to the last checkpoint per node whenever a StateManager
opens it, and the latest state of each node is kept in memory.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .error_tracker import InvalidTransition
from .logging_manager import get_logger
from .models import NodeState


logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[NodeState, tuple] = {
    NodeState.PENDING: (NodeState.FETCHING, NodeState.FAILED),
    NodeState.FETCHING: (NodeState.CONVERTING, NodeState.FAILED),
    NodeState.CONVERTING: (NodeState.PERSISTING, NodeState.FAILED),
    NodeState.PERSISTING: (NodeState.REGISTERED, NodeState.FAILED),
    # A later pass starts the node over
    NodeState.REGISTERED: (NodeState.PENDING,),
    NodeState.FAILED: (NodeState.PENDING,),
}


@dataclass
class Checkpoint:
    external_id: str
    state: str
    job_id: Optional[str]
    details: Dict
    timestamp: str


class StateManager:
    def __init__(self, state_dir: str = "./state", filename: str = "node_checkpoints.jsonl"):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.filepath = self.state_dir / filename
        self._lock = threading.Lock()
        self._latest: Dict[str, Dict] = {}
        self._compact()

    def _compact(self) -> None:
        """Rewrite the log with one row per node, the most recent one."""
        rows = self.read_checkpoints()
        for row in rows:
            if row.get("external_id"):
                self._latest[row["external_id"]] = row
        if not self.filepath.exists():
            return
        tmp_path = self.filepath.with_suffix(self.filepath.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for row in self._latest.values():
                f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
        tmp_path.replace(self.filepath)
        if len(rows) > len(self._latest):
            logger.info(f"Compacted checkpoint log from {len(rows)} to {len(self._latest)} rows")

    def write_checkpoint(self, external_id: str, state: NodeState, job_id: Optional[str] = None,
                         details: Optional[Dict] = None) -> None:
        cp = Checkpoint(
            external_id=external_id,
            state=state.value,
            job_id=job_id,
            details=details or {},
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        row = asdict(cp)
        with self._lock:
            with open(self.filepath, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
            self._latest[external_id] = row

    def transition(self, external_id: str, current: NodeState, target: NodeState, job_id: Optional[str] = None,
                   details: Optional[Dict] = None) -> NodeState:
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(f"{current.value} -> {target.value} is not allowed", external_id=external_id)
        self.write_checkpoint(external_id, target, job_id, details)
        return target

    def read_checkpoints(self, external_id: Optional[str] = None) -> List[Dict]:
        if not self.filepath.exists():
            return []
        rows: List[Dict] = []
        with open(self.filepath, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed checkpoint line")
                    continue
                if external_id is None or data.get("external_id") == external_id:
                    rows.append(data)
        return rows

    def latest_state(self, external_id: str) -> Optional[NodeState]:
        with self._lock:
            row = self._latest.get(external_id)
        return NodeState(row["state"]) if row else None

    def interrupted(self) -> List[str]:
        """Nodes whose last checkpoint is an in-flight state."""
        with self._lock:
            latest = {external_id: row["state"] for external_id, row in self._latest.items()}
        in_flight = {NodeState.FETCHING.value, NodeState.CONVERTING.value, NodeState.PERSISTING.value}
        return sorted(external_id for external_id, state in latest.items() if state in in_flight)
