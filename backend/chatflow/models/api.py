# /chatflow/models/api.py

from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any
from datetime import datetime

from chatflow.models.execution import EventKind, Subject
from chatflow.models.flow import FlowConnection, FlowNode, FlowSettings, VariableDeclaration

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str


class FlowValidationRequest(BaseModel):
    # Raw dicts on purpose: validation reports malformed nodes instead of rejecting the request
    nodes: List[Any] = Field(default_factory=list)
    connections: List[Any] = Field(default_factory=list)


class FlowUpsertRequest(BaseModel):
    project_id: str = "default"
    name: str
    description: Optional[str] = None
    is_active: bool = True
    nodes: List[FlowNode]
    connections: List[FlowConnection] = Field(default_factory=list)
    variables: List[VariableDeclaration] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)


class FallbackFlowRequest(BaseModel):
    project_id: str = "default"
    flow_id: Optional[str] = None


class StartFlowRequest(BaseModel):
    subject: Subject
    start_node_id: Optional[str] = None
    kind: Optional[EventKind] = None
    payload: Any = None


class ResumeRequest(BaseModel):
    chat_id: str = Field(..., min_length=1)
    kind: EventKind
    payload: Any = None
    subject: Optional[Subject] = None
    project_id: Optional[str] = None


class InboundEventRequest(ResumeRequest):
    event_id: Optional[str] = None


class RestartRequest(BaseModel):
    node_id: str = Field(..., min_length=1)
    reset_variables: bool = False
