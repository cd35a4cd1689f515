from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

# Job States
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
DEAD = "dead"  # DLQ only

JOB_STATES = (PENDING, PROCESSING, COMPLETED, FAILED, DEAD)


@dataclass
class Job:
    id: str
    command: str
    state: str = PENDING
    attempts: int = 0
    max_retries: int = 3
    created_at: str = ""
    updated_at: str = ""
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["error_message"] is None:
            del data["error_message"]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            command=data["command"],
            state=data.get("state", PENDING),
            attempts=int(data.get("attempts", 0)),
            max_retries=int(data.get("max_retries", 3)),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            error_message=data.get("error_message"),
        )


@dataclass
class Status:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0
    max_retries: str = ""
    backoff_base: str = ""
    job_timeout: str = ""
    active_workers: int = 0
    config: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
