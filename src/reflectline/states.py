from enum import Enum

ACTIVE_QUEUE_STATES = {"pending", "attempting"}
TERMINAL_QUEUE_STATES = {"completed", "failed", "cancelled"}

LIVE_CALL_STATES = {"initiated", "connected", "in_progress"}
TERMINAL_CALL_STATES = {"completed", "abandoned", "failed"}


class QueueStatus(Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self.value in ACTIVE_QUEUE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_QUEUE_STATES


class CallStatus(Enum):
    INITIATED = "initiated"
    CONNECTED = "connected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        return self.value in LIVE_CALL_STATES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_CALL_STATES


QUEUE_TRANSITIONS = {
    QueueStatus.PENDING: {QueueStatus.ATTEMPTING, QueueStatus.CANCELLED},
    QueueStatus.ATTEMPTING: {
        QueueStatus.PENDING, QueueStatus.COMPLETED,
        QueueStatus.FAILED, QueueStatus.CANCELLED,
    },
    QueueStatus.COMPLETED: set(),
    QueueStatus.FAILED: set(),
    QueueStatus.CANCELLED: set(),
}

CALL_TRANSITIONS = {
    CallStatus.INITIATED: {CallStatus.CONNECTED, CallStatus.ABANDONED, CallStatus.FAILED},
    CallStatus.CONNECTED: {CallStatus.IN_PROGRESS, CallStatus.ABANDONED, CallStatus.FAILED},
    CallStatus.IN_PROGRESS: {
        CallStatus.IN_PROGRESS, CallStatus.COMPLETED,
        CallStatus.ABANDONED, CallStatus.FAILED,
    },
    CallStatus.COMPLETED: set(),
    CallStatus.ABANDONED: set(),
    CallStatus.FAILED: set(),
}
