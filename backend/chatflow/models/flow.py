# /chatflow/models/flow.py

from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field


class NodeType(str, Enum):
    """Closed set of node kinds a flow graph may contain."""
    # Triggers
    TRIGGER_COMMAND = "trigger.command"
    TRIGGER_MESSAGE = "trigger.message"
    TRIGGER_CALLBACK = "trigger.callback"
    TRIGGER_CONTACT = "trigger.contact"
    # Messages
    MESSAGE = "message"
    MESSAGE_INLINE_KEYBOARD = "message.keyboard.inline"
    MESSAGE_REPLY_KEYBOARD = "message.keyboard.reply"
    MESSAGE_PHOTO = "message.photo"
    MESSAGE_VIDEO = "message.video"
    MESSAGE_DOCUMENT = "message.document"
    MESSAGE_EDIT = "message.edit"
    MESSAGE_DELETE = "message.delete"
    # Branching
    CONDITION = "condition"
    # Explicit waits
    WAIT_INPUT = "wait.input"
    WAIT_CALLBACK = "wait.callback"
    WAIT_CONTACT = "wait.contact"
    # Actions
    ACTION_API_REQUEST = "action.api_request"
    ACTION_DATABASE_QUERY = "action.database_query"
    ACTION_SET_VARIABLE = "action.set_variable"
    ACTION_GET_VARIABLE = "action.get_variable"
    ACTION_REQUEST_CONTACT = "action.request_contact"
    ACTION_SEND_NOTIFICATION = "action.send_notification"
    # Flow control
    FLOW_DELAY = "flow.delay"
    FLOW_JUMP = "flow.jump"
    FLOW_SWITCH = "flow.switch"
    FLOW_LOOP = "flow.loop"
    FLOW_END = "flow.end"

    @property
    def is_trigger(self) -> bool:
        return self.value.startswith("trigger.")


TRIGGER_TYPES = frozenset(t for t in NodeType if t.is_trigger)


class EdgeLabel(str, Enum):
    """Well-known connection labels. Callback identifiers and switch cases are free-form."""
    DEFAULT = "default"
    TRUE = "true"
    FALSE = "false"
    TIMEOUT = "timeout"
    LOOP = "loop"
    DONE = "done"


class VariableScope(str, Enum):
    SESSION = "session"
    PERSISTENT = "persistent"


class FlowNode(BaseModel):
    id: str
    type: NodeType
    label: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class FlowConnection(BaseModel):
    id: str
    source: str
    target: str
    label: Optional[str] = Field(default=None, description="Edge label; empty means 'default'")

    @property
    def edge_label(self) -> str:
        return self.label or EdgeLabel.DEFAULT.value


class VariableDeclaration(BaseModel):
    name: str
    scope: VariableScope = VariableScope.SESSION
    default: Any = None


class FlowSettings(BaseModel):
    max_steps: Optional[int] = Field(default=None, ge=1)
    wait_timeout_seconds: Optional[int] = Field(default=None, ge=1)


class FlowGraph(BaseModel):
    """
    Immutable, versioned definition of a conversation.

    A running execution pins to exactly one (id, version) pair; editing a flow
    produces a new version instead of mutating the one in use.
    """
    id: str
    project_id: str = "default"
    version: int = 1
    name: str = ""
    description: Optional[str] = None
    is_active: bool = True
    nodes: List[FlowNode] = Field(default_factory=list)
    connections: List[FlowConnection] = Field(default_factory=list)
    variables: List[VariableDeclaration] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"frozen": True}
