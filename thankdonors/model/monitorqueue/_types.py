from dataclasses import dataclass
from typing import Optional

Q_QUEUED = "queued"
Q_RUNNING = "running"
Q_DONE = "done"
Q_EXHAUSTED = "exhausted"


@dataclass
class JobState:
    postcard_id: str
    status: str
    attempts: int
    next_run_at: float
    outcome: Optional[str] = None
    last_error: Optional[str] = None
