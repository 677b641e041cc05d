from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from reflectline.states import QueueStatus


@dataclass
class QueuedCall:
    conversation_id: str
    destination: str
    scheduled_for: datetime
    max_attempts: int
    owner: str = ""
    status: QueueStatus = QueueStatus.PENDING
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: str = ""

    # Insertion order, assigned by the store
    seq: int = 0

    @property
    def due_at(self) -> datetime:
        return self.next_retry_at or self.scheduled_for

    @property
    def attempts_remaining(self) -> int:
        return self.max_attempts - self.attempt_count
