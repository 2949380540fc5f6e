# /chatflow/workflows/variables.py

from typing import Any, Dict, Optional

from chatflow.models.execution import ExecutionContext
from chatflow.models.flow import VariableScope
from chatflow.services.store import ExecutionStore
from chatflow.workflows.templates import lookup


def persistent_owner(context: ExecutionContext) -> str:
    """Persistent variables belong to the subject within a project, not to one execution."""
    return f"{context.project_id}:{context.subject.key}"


class VariableAccessor:
    """
    Scope-aware variable access for one execution context.

    Writes go through to the store first and then into a per-context cache,
    so a read after a write in the same step always sees the new value.
    Session scope is keyed by context id; persistent scope by subject.
    """

    def __init__(self, store: ExecutionStore, context: ExecutionContext):
        self._store = store
        self._owners = {
            VariableScope.SESSION: context.id,
            VariableScope.PERSISTENT: persistent_owner(context),
        }
        self._cache: Dict[VariableScope, Dict[str, Any]] = {
            VariableScope.SESSION: {},
            VariableScope.PERSISTENT: {},
        }

    async def load(self) -> "VariableAccessor":
        for scope, owner in self._owners.items():
            self._cache[scope] = await self._store.get_variables(owner, scope)
        return self

    @property
    def session(self) -> Dict[str, Any]:
        return self._cache[VariableScope.SESSION]

    @property
    def persistent(self) -> Dict[str, Any]:
        return self._cache[VariableScope.PERSISTENT]

    def get(self, name: str, scope: Optional[VariableScope] = None, default: Any = None) -> Any:
        """
        Reads a variable. With no scope, session shadows persistent.
        Dotted names walk into nested values.
        """
        scopes = (self._cache[VariableScope(scope)],) if scope else (self.session, self.persistent)
        found, value = lookup(name, scopes)
        return value if found else default

    def has(self, name: str, scope: Optional[VariableScope] = None) -> bool:
        scopes = (self._cache[VariableScope(scope)],) if scope else (self.session, self.persistent)
        return lookup(name, scopes)[0]

    async def set(self, name: str, value: Any, scope: VariableScope = VariableScope.SESSION) -> None:
        scope = VariableScope(scope)
        await self._store.set_variable(self._owners[scope], scope, name, value)
        self._cache[scope][name] = value

    async def update(self, values: Dict[str, Any], scope: VariableScope = VariableScope.SESSION) -> None:
        for name, value in values.items():
            await self.set(name, value, scope)

    def namespace(self) -> Dict[str, Any]:
        """Flat view for expressions: persistent values overlaid by session values."""
        merged = dict(self.persistent)
        merged.update(self.session)
        return merged
