# /chatflow/models/execution.py

import uuid
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, model_validator


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (ExecutionStatus.RUNNING, ExecutionStatus.WAITING)
TERMINAL_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class WaitType(str, Enum):
    NONE = "none"
    INPUT = "input"
    CALLBACK = "callback"
    CONTACT = "contact"
    # Engine-internal: scheduled resumption, never matched by inbound events
    DELAY = "delay"


class EventKind(str, Enum):
    MESSAGE = "message"
    CALLBACK = "callback"
    CONTACT = "contact"


# Which paused waits an inbound event of a given kind may wake up
COMPATIBLE_WAITS: Dict[EventKind, tuple] = {
    EventKind.MESSAGE: (WaitType.INPUT,),
    EventKind.CONTACT: (WaitType.CONTACT, WaitType.INPUT),
    EventKind.CALLBACK: (WaitType.CALLBACK,),
}


class Subject(BaseModel):
    """The end-user an execution is bound to."""
    chat_id: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def key(self) -> str:
        """
        Identity used for persistent variables and the active-context guard.

        Always the chat id: inbound events carry it whether or not a profile
        came with them, so every entry path resolves the same key.
        """
        return self.chat_id


class ExecutionContext(BaseModel):
    """Persisted state of one run of one flow version for one subject."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_id: str = "default"
    flow_id: str
    flow_version: int
    subject: Subject
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_node_id: Optional[str] = None
    wait_type: WaitType = WaitType.NONE
    resume_node_id: Optional[str] = None
    wait_deadline: Optional[datetime] = None
    step_count: int = 0
    error: Optional[Dict[str, Any]] = None
    parent_context_id: Optional[str] = None
    trigger: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def active_key(self) -> str:
        return f"{self.flow_id}:{self.subject.key}"


class WaitRequest(BaseModel):
    wait_type: WaitType
    resume_node_id: Optional[str] = None
    deadline: Optional[datetime] = None

    @model_validator(mode="after")
    def must_wait_for_something(self):
        if self.wait_type == WaitType.NONE:
            raise ValueError("A wait request needs a wait type other than 'none'")
        return self


class NodeExecutionResult(BaseModel):
    """
    Outcome of running one node: exactly one of next_node_id, end_flow or wait.
    """
    next_node_id: Optional[str] = None
    end_flow: bool = False
    success: bool = True
    wait: Optional[WaitRequest] = None
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one_outcome(self):
        outcomes = [self.next_node_id is not None, self.end_flow, self.wait is not None]
        if sum(outcomes) != 1:
            raise ValueError("NodeExecutionResult needs exactly one of next_node_id, end_flow or wait")
        return self

    @classmethod
    def goto(cls, node_id: str, **output: Any) -> "NodeExecutionResult":
        return cls(next_node_id=node_id, output=output)

    @classmethod
    def end(cls, success: bool = True, error: Optional[str] = None, **output: Any) -> "NodeExecutionResult":
        return cls(end_flow=True, success=success, error=error, output=output)

    @classmethod
    def wait_for(
        cls,
        wait_type: WaitType,
        resume_node_id: Optional[str] = None,
        deadline: Optional[datetime] = None,
        **output: Any,
    ) -> "NodeExecutionResult":
        return cls(
            wait=WaitRequest(wait_type=wait_type, resume_node_id=resume_node_id, deadline=deadline),
            output=output,
        )


class InboundEvent(BaseModel):
    """A platform event already parsed into engine terms."""
    chat_id: str
    kind: EventKind
    payload: Any = None
    subject: Optional[Subject] = None
    project_id: Optional[str] = None
    event_id: Optional[str] = None
    received_at: datetime = Field(default_factory=datetime.utcnow)

    def resolved_subject(self) -> Subject:
        return self.subject or Subject(chat_id=self.chat_id)


class StepStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    WAITING = "waiting"
    ENDED = "ended"


class StepTrace(BaseModel):
    context_id: str
    step: int
    node_id: str
    node_type: str
    status: StepStatus
    duration_ms: float = 0.0
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class SubjectRecord(BaseModel):
    """A known end-user, the target of contact matching."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_id: str = "default"
    phone: Optional[str] = None
    platform_user_id: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
