# /chatflow/services/store.py

import asyncio
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from chatflow.models.execution import (
    ACTIVE_STATUSES,
    ExecutionContext,
    ExecutionStatus,
    StepTrace,
    SubjectRecord,
    WaitType,
)
from chatflow.models.flow import FlowGraph, VariableScope
from chatflow.workflows.errors import AlreadyRunning

# Persistence contract for the engine. Every cross-invocation piece of state
# (contexts, variables, effect keys, traces) lives behind this interface so a
# paused execution survives process restarts.


class ExecutionStore(ABC):
    # ==================== Flows ====================

    @abstractmethod
    async def save_flow(self, flow: FlowGraph) -> None: ...

    @abstractmethod
    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowGraph]:
        """Returns the given version, or the latest one when version is None."""

    @abstractmethod
    async def list_active_flows(self, project_id: str) -> List[FlowGraph]:
        """Latest version of every active flow in a project."""

    # ==================== Contexts ====================

    @abstractmethod
    async def insert_context(self, context: ExecutionContext) -> None:
        """Raises AlreadyRunning if (flow, subject) already has an active context."""

    @abstractmethod
    async def get_context(self, context_id: str) -> Optional[ExecutionContext]: ...

    @abstractmethod
    async def find_active_context(self, flow_id: str, subject_key: str) -> Optional[ExecutionContext]: ...

    @abstractmethod
    async def update_context(self, context: ExecutionContext,
                             expected_statuses: Iterable[ExecutionStatus] = (ExecutionStatus.RUNNING,)) -> bool:
        """
        Conditionally replaces a context. Returns False (and writes nothing)
        when the stored status is not one of expected_statuses.
        """

    @abstractmethod
    async def claim_waiting_context(self, chat_id: str, wait_types: Iterable[WaitType],
                                    project_id: Optional[str] = None) -> Optional[ExecutionContext]:
        """
        Atomically flips one waiting context for chat_id whose wait type is in
        wait_types to running. Returns the context as it was BEFORE the claim,
        or None when nothing matched.
        """

    @abstractmethod
    async def claim_expired_wait(self, now: datetime) -> Optional[ExecutionContext]:
        """Same as claim_waiting_context, for one waiting context whose deadline has passed."""

    @abstractmethod
    async def cancel_context(self, context_id: str) -> Optional[ExecutionContext]:
        """Flips running|waiting to cancelled. Returns the cancelled context or None."""

    # ==================== Variables ====================

    @abstractmethod
    async def get_variables(self, owner: str, scope: VariableScope) -> Dict[str, Any]: ...

    @abstractmethod
    async def set_variable(self, owner: str, scope: VariableScope, name: str, value: Any) -> None: ...

    # ==================== Subjects ====================

    @abstractmethod
    async def find_subject_by_phone(self, project_id: str, phone_variants: List[str]) -> Optional[SubjectRecord]: ...

    @abstractmethod
    async def find_subject_by_platform_id(self, project_id: str, platform_user_id: str) -> Optional[SubjectRecord]: ...

    @abstractmethod
    async def get_subject_record(self, subject_id: str) -> Optional[SubjectRecord]: ...

    @abstractmethod
    async def save_subject(self, record: SubjectRecord) -> None: ...

    # ==================== Effects, traces, recovery ====================

    @abstractmethod
    async def claim_effect(self, effect_key: str) -> bool:
        """True the first time a key is seen, False for every repeat."""

    @abstractmethod
    async def release_effect(self, effect_key: str) -> None:
        """Forgets a claimed key so a failed effect can be attempted again."""

    @abstractmethod
    async def append_trace(self, trace: StepTrace) -> None: ...

    @abstractmethod
    async def get_traces(self, context_id: str) -> List[StepTrace]: ...

    @abstractmethod
    async def record_recovery_attempt(self, key: str, window_seconds: int) -> int:
        """Records one attempt and returns the number of attempts inside the window."""

    @abstractmethod
    async def set_fallback_flow(self, project_id: str, flow_id: Optional[str]) -> None: ...

    @abstractmethod
    async def get_fallback_flow(self, project_id: str) -> Optional[str]: ...


def effect_key(context_id: str, node_id: str, step: int) -> str:
    """De-duplication key for a non-idempotent side effect of one step."""
    return f"{context_id}:{node_id}:{step}"


class InMemoryExecutionStore(ExecutionStore):
    """
    Process-local store used for tests and single-process local runs.

    All compound check-and-set operations run under one asyncio.Lock, which
    gives the same atomicity the Mongo store gets from conditional updates.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._flows: Dict[str, Dict[int, FlowGraph]] = {}
        self._contexts: Dict[str, ExecutionContext] = {}
        self._active_keys: Dict[str, str] = {}
        self._variables: Dict[Tuple[str, str], Dict[str, Any]] = defaultdict(dict)
        self._subjects: Dict[str, SubjectRecord] = {}
        self._effects: set = set()
        self._traces: Dict[str, List[StepTrace]] = defaultdict(list)
        self._recovery: Dict[str, Deque[float]] = defaultdict(deque)
        self._fallbacks: Dict[str, str] = {}

    # ==================== Flows ====================

    async def save_flow(self, flow: FlowGraph) -> None:
        self._flows.setdefault(flow.id, {})[flow.version] = flow

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowGraph]:
        versions = self._flows.get(flow_id)
        if not versions:
            return None
        if version is None:
            return versions[max(versions)]
        return versions.get(version)

    async def list_active_flows(self, project_id: str) -> List[FlowGraph]:
        latest = [versions[max(versions)] for versions in self._flows.values() if versions]
        return [flow for flow in latest if flow.is_active and flow.project_id == project_id]

    # ==================== Contexts ====================

    def _release_active_key(self, context: ExecutionContext) -> None:
        if context.status not in ACTIVE_STATUSES and self._active_keys.get(context.active_key) == context.id:
            del self._active_keys[context.active_key]

    async def insert_context(self, context: ExecutionContext) -> None:
        async with self._lock:
            holder = self._active_keys.get(context.active_key)
            if holder is not None:
                raise AlreadyRunning(f"Flow '{context.flow_id}' is already active for subject '{context.subject.key}'")
            self._contexts[context.id] = context.model_copy(deep=True)
            if context.status in ACTIVE_STATUSES:
                self._active_keys[context.active_key] = context.id

    async def get_context(self, context_id: str) -> Optional[ExecutionContext]:
        context = self._contexts.get(context_id)
        return context.model_copy(deep=True) if context else None

    async def find_active_context(self, flow_id: str, subject_key: str) -> Optional[ExecutionContext]:
        context_id = self._active_keys.get(f"{flow_id}:{subject_key}")
        return await self.get_context(context_id) if context_id else None

    async def update_context(self, context: ExecutionContext,
                             expected_statuses: Iterable[ExecutionStatus] = (ExecutionStatus.RUNNING,)) -> bool:
        expected = tuple(expected_statuses)
        async with self._lock:
            stored = self._contexts.get(context.id)
            if stored is None or stored.status not in expected:
                return False
            context.updated_at = datetime.utcnow()
            self._contexts[context.id] = context.model_copy(deep=True)
            self._release_active_key(context)
            return True

    def _claim(self, context: ExecutionContext) -> ExecutionContext:
        before = context.model_copy(deep=True)
        context.status = ExecutionStatus.RUNNING
        context.wait_type = WaitType.NONE
        context.wait_deadline = None
        context.updated_at = datetime.utcnow()
        return before

    async def claim_waiting_context(self, chat_id: str, wait_types: Iterable[WaitType],
                                    project_id: Optional[str] = None) -> Optional[ExecutionContext]:
        allowed = tuple(wait_types)
        async with self._lock:
            candidates = [
                c for c in self._contexts.values()
                if c.status == ExecutionStatus.WAITING
                and c.subject.chat_id == chat_id
                and c.wait_type in allowed
                and (project_id is None or c.project_id == project_id)
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda c: c.updated_at)
            return self._claim(newest)

    async def claim_expired_wait(self, now: datetime) -> Optional[ExecutionContext]:
        async with self._lock:
            expired = [
                c for c in self._contexts.values()
                if c.status == ExecutionStatus.WAITING and c.wait_deadline is not None and c.wait_deadline <= now
            ]
            if not expired:
                return None
            oldest = min(expired, key=lambda c: c.wait_deadline)
            return self._claim(oldest)

    async def cancel_context(self, context_id: str) -> Optional[ExecutionContext]:
        async with self._lock:
            context = self._contexts.get(context_id)
            if context is None or context.status not in ACTIVE_STATUSES:
                return None
            context.status = ExecutionStatus.CANCELLED
            context.wait_type = WaitType.NONE
            context.wait_deadline = None
            context.finished_at = context.updated_at = datetime.utcnow()
            self._release_active_key(context)
            return context.model_copy(deep=True)

    # ==================== Variables ====================

    async def get_variables(self, owner: str, scope: VariableScope) -> Dict[str, Any]:
        return dict(self._variables[(VariableScope(scope).value, owner)])

    async def set_variable(self, owner: str, scope: VariableScope, name: str, value: Any) -> None:
        self._variables[(VariableScope(scope).value, owner)][name] = value

    # ==================== Subjects ====================

    async def find_subject_by_phone(self, project_id: str, phone_variants: List[str]) -> Optional[SubjectRecord]:
        wanted = set(phone_variants)
        for record in self._subjects.values():
            if record.project_id == project_id and record.phone and record.phone in wanted:
                return record.model_copy()
        return None

    async def find_subject_by_platform_id(self, project_id: str, platform_user_id: str) -> Optional[SubjectRecord]:
        for record in self._subjects.values():
            if record.project_id == project_id and record.platform_user_id == platform_user_id:
                return record.model_copy()
        return None

    async def get_subject_record(self, subject_id: str) -> Optional[SubjectRecord]:
        record = self._subjects.get(subject_id)
        return record.model_copy() if record else None

    async def save_subject(self, record: SubjectRecord) -> None:
        record.updated_at = datetime.utcnow()
        self._subjects[record.id] = record.model_copy()

    # ==================== Effects, traces, recovery ====================

    async def claim_effect(self, effect_key: str) -> bool:
        async with self._lock:
            if effect_key in self._effects:
                return False
            self._effects.add(effect_key)
            return True

    async def release_effect(self, effect_key: str) -> None:
        self._effects.discard(effect_key)

    async def append_trace(self, trace: StepTrace) -> None:
        self._traces[trace.context_id].append(trace.model_copy())

    async def get_traces(self, context_id: str) -> List[StepTrace]:
        return sorted(self._traces.get(context_id, []), key=lambda t: (t.step, t.timestamp))

    async def record_recovery_attempt(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            now = time.monotonic()
            attempts = self._recovery[key]
            attempts.append(now)
            while attempts and now - attempts[0] > window_seconds:
                attempts.popleft()
            return len(attempts)

    async def set_fallback_flow(self, project_id: str, flow_id: Optional[str]) -> None:
        if flow_id is None:
            self._fallbacks.pop(project_id, None)
        else:
            self._fallbacks[project_id] = flow_id

    async def get_fallback_flow(self, project_id: str) -> Optional[str]:
        return self._fallbacks.get(project_id)
