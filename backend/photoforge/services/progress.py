"""In-memory progress for running jobs.

Entries live only as long as the process. A crash mid-job leaves the durable record in
``processing`` with no entry to explain it; see ``JobOrchestrator.find_orphaned_jobs``.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STEP_LABELS = {
    "initializing": "Initializing job",
    "loading_scene": "Loading scene configuration",
    "preparing_prompt": "Preparing prompt",
    "loading_source_image": "Reading source image",
    "calling_model": "Calling the generative model",
    "processing_result": "Processing model output",
    "saving_images": "Saving generated images",
    "completed": "Completed",
    "failed": "Failed",
    "deleted": "Moved to trash",
}


def step_label(status: str) -> str:
    return STEP_LABELS.get(status, status)


@dataclass
class ProgressEntry:
    job_id: str
    owner_id: str
    status: str = "initializing"
    progress_percent: int = 0
    current_step_label: str = STEP_LABELS["initializing"]
    started_at: float = field(default_factory=time.time)
    estimated_ms: int = 30000
    last_error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    @property
    def estimated_remaining_ms(self) -> int:
        return max(0, self.estimated_ms - self.elapsed_ms)


class ProgressTracker:
    """Thread-safe job id -> ProgressEntry map owned by one orchestrator.

    Finished entries get a deadline; expired ones are dropped on the next access.
    """

    def __init__(self, grace_period_s: float = 60, estimated_ms: int = 30000):
        self.grace_period_s = grace_period_s
        self.estimated_ms = estimated_ms
        self._entries: Dict[str, ProgressEntry] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def create(self, job_id: str, owner_id: str, meta: Optional[Dict[str, Any]] = None) -> ProgressEntry:
        entry = ProgressEntry(job_id=job_id, owner_id=owner_id, estimated_ms=self.estimated_ms, meta=dict(meta or {}))
        with self._lock:
            self._sweep()
            self._entries[job_id] = entry
            self._expires_at.pop(job_id, None)
            return replace(entry)

    def update(self, job_id: str, **fields: Any) -> Optional[ProgressEntry]:
        with self._lock:
            self._sweep()
            entry = self._entries.get(job_id)
            if entry is None:
                return None
            if "progress_percent" in fields:
                fields["progress_percent"] = max(entry.progress_percent, min(100, int(fields["progress_percent"])))
            if "status" in fields and "current_step_label" not in fields:
                fields["current_step_label"] = step_label(fields["status"])
            for key, value in fields.items():
                setattr(entry, key, value)
            return replace(entry)

    def get(self, job_id: str) -> Optional[ProgressEntry]:
        with self._lock:
            self._sweep()
            entry = self._entries.get(job_id)
            return replace(entry) if entry else None

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)
            self._expires_at.pop(job_id, None)

    def schedule_removal(self, job_id: str) -> None:
        if self.grace_period_s <= 0:
            self.remove(job_id)
            return
        with self._lock:
            if job_id in self._entries:
                self._expires_at[job_id] = time.monotonic() + self.grace_period_s

    def _sweep(self) -> None:
        now = time.monotonic()
        expired = [job_id for job_id, deadline in self._expires_at.items() if deadline <= now]
        for job_id in expired:
            del self._expires_at[job_id]
            self._entries.pop(job_id, None)
        if expired:
            logger.debug(f"Dropped {len(expired)} expired progress entries")

    def __len__(self) -> int:
        with self._lock:
            self._sweep()
            return len(self._entries)
