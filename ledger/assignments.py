"""Persisted simulated-hardware profile per worker.

Each worker identity is assigned a GPU tag from the configured catalog and a
storage figure the first time it is seen.  The assignment is written to disk
and reused on every later heartbeat and every later process run, so a worker
always reports the same hardware.

File format (``config/assignments.json``)::

    {"<worker_id>": {"gpu": "NVIDIA GeForce RTX 3080", "storage": "231.77"}}

Concurrency:
    ``get_or_create`` has no suspension point between lookup and insert, so
    within one event loop the first write for a worker is race-free.  Two
    *processes* sharing the file can still both create an entry for the same
    new worker; before writing, the store re-reads the file and adopts any
    entry another process already persisted, which narrows but does not close
    that window (last writer wins on the remaining overlap).
"""

import logging
import random
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Sequence

from core.utils import safe_json_read, safe_json_write

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceAssignment:
    """Static part of a worker's reported capacity."""

    gpu: str
    storage: str

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> Optional["ResourceAssignment"]:
        gpu = data.get("gpu") if isinstance(data, dict) else None
        storage = data.get("storage") if isinstance(data, dict) else None
        if not gpu or storage is None:
            return None
        return cls(gpu=str(gpu), storage=str(storage))


class AssignmentStore:
    """``worker_id -> ResourceAssignment`` map backed by a JSON file."""

    def __init__(
        self,
        path: str,
        catalog: Sequence[str],
        max_storage: float = 500.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not catalog:
            raise ValueError("GPU catalog must not be empty")
        self.path = path
        self.catalog = list(catalog)
        self.max_storage = max_storage
        self._rng = rng or random.Random()
        self._assignments: Dict[str, ResourceAssignment] = {}
        self.writes = 0
        self.load()

    def load(self) -> int:
        """(Re)load assignments from disk; absent or corrupt means empty."""
        self._assignments = self._read_file()
        if self._assignments:
            logger.info("Loaded %d resource assignments from %s", len(self._assignments), self.path)
        return len(self._assignments)

    def _read_file(self) -> Dict[str, ResourceAssignment]:
        data = safe_json_read(self.path)
        if data is None:
            return {}
        assignments: Dict[str, ResourceAssignment] = {}
        for worker_id, entry in data.items():
            assignment = ResourceAssignment.from_dict(entry)
            if assignment is None:
                logger.warning("Dropping invalid assignment for worker %s", worker_id)
                continue
            assignments[worker_id] = assignment
        return assignments

    def get(self, worker_id: str) -> Optional[ResourceAssignment]:
        return self._assignments.get(worker_id)

    def get_or_create(self, worker_id: str) -> ResourceAssignment:
        """Return the worker's assignment, creating and persisting it once."""
        existing = self._assignments.get(worker_id)
        if existing is not None:
            return existing

        on_disk = self._read_file()
        if worker_id in on_disk:
            assignment = on_disk[worker_id]
        else:
            assignment = ResourceAssignment(
                gpu=self._rng.choice(self.catalog),
                storage=f"{self._rng.random() * self.max_storage:.2f}",
            )
            logger.info("New resource assignment for worker %s: %s", worker_id, assignment)

        merged = {**on_disk, **self._assignments, worker_id: assignment}
        self._assignments = merged
        self._persist()
        return assignment

    def _persist(self) -> None:
        payload = {worker_id: asdict(a) for worker_id, a in self._assignments.items()}
        if safe_json_write(self.path, payload):
            self.writes += 1

    def __len__(self) -> int:
        return len(self._assignments)

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._assignments
