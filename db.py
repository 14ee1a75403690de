import logging
import threading

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from config import JOB_STORE_BACKEND
from schema import JobRecord, JobStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.IN_PROGRESS},
    JobStatus.IN_PROGRESS: {JobStatus.SUCCESS, JobStatus.FAILED},
    JobStatus.SUCCESS: set(),
    JobStatus.FAILED: set(),
}


class JobAlreadyExistsError(RuntimeError):
    pass


class JobNotFoundError(KeyError):
    pass


class InvalidTransitionError(RuntimeError):
    pass


class JobStore(ABC):
    @abstractmethod
    def create(self, record: JobRecord) -> JobRecord:
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[JobRecord]:
        pass

    @abstractmethod
    def update(self, job_id: str, /, **fields: Any) -> JobRecord:
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def list(self, limit: int = 0, skip: int = 0) -> List[JobRecord]:
        pass


class InMemoryJobStore(JobStore):
    """
    Process-local job store.

    Assumptions:
    - Records are never deleted; the map grows for the life of the process.
    - Each key has a single writer (the lifecycle that owns the job), so
      updates only need the lock for the swap, not for the whole job.
    - Updates replace the stored record with a modified copy, so readers
      always see a consistent snapshot (status and completed_at together).
    """

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: JobRecord) -> JobRecord:
        with self._lock:
            if record.job_id in self._jobs:
                raise JobAlreadyExistsError(f"Job {record.job_id} already exists")
            self._jobs[record.job_id] = record
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def update(self, job_id: str, /, **fields: Any) -> JobRecord:
        unknown = set(fields) - set(JobRecord.model_fields)
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        if "job_id" in fields or "created_at" in fields:
            raise ValueError("job_id and created_at are immutable")

        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)

        new_status = fields.get("status")
        if new_status is not None and new_status != current.status:
            if new_status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    f"Job {job_id}: cannot move from {current.status.value} to {JobStatus(new_status).value}"
                )
        elif current.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is already {current.status.value}")

        updated = current.model_copy(update=fields)
        with self._lock:
            self._jobs[job_id] = updated
        return updated

    def count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def list(self, limit: int = 0, skip: int = 0) -> List[JobRecord]:
        with self._lock:
            items = list(self._jobs.values())

        items.sort(key=lambda job: job.created_at, reverse=True)

        # Apply skip/limit in Python
        if skip:
            items = items[skip:]
        if limit:
            items = items[:limit]
        return items


def get_job_store() -> JobStore:
    if JOB_STORE_BACKEND == "memory":
        logger.info("JOB_STORE_BACKEND: memory")
        return InMemoryJobStore()
    raise RuntimeError(f"Unsupported JOB_STORE_BACKEND: {JOB_STORE_BACKEND}")
