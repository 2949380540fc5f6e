# /chatflow/workflows/flow_registry.py

import logging
from typing import Dict, List, Optional, Tuple

from chatflow.services.store import ExecutionStore
from chatflow.workflows.compiler import ExecutableFlow, compile_flow
from chatflow.workflows.errors import GraphConfigurationError

logger = logging.getLogger(__name__)


class FlowRegistry:
    """
    Compiled flows by (flow_id, version).

    Flow versions are immutable, so a compiled version never goes stale.
    Only the "latest version" pointer can change, which is why lookups
    without a version always go to the store first.
    """

    def __init__(self, store: ExecutionStore):
        self.store = store
        self._compiled: Dict[Tuple[str, int], ExecutableFlow] = {}

    async def get(self, flow_id: str, version: Optional[int] = None) -> ExecutableFlow:
        if version is not None and (flow_id, version) in self._compiled:
            return self._compiled[(flow_id, version)]

        flow = await self.store.get_flow(flow_id, version)
        if flow is None:
            suffix = f" v{version}" if version is not None else ""
            raise GraphConfigurationError(f"Flow '{flow_id}'{suffix} does not exist")

        key = (flow.id, flow.version)
        if key not in self._compiled:
            result = compile_flow(flow)
            if not result["success"]:
                messages = "; ".join(e["message"] for e in result["errors"])
                raise GraphConfigurationError(f"Flow '{flow_id}' v{flow.version} does not compile: {messages}")
            self._compiled[key] = result["executable_flow"]
        return self._compiled[key]

    async def active_flows(self, project_id: str) -> List[ExecutableFlow]:
        """Latest version of every active flow in the project; broken flows are skipped."""
        flows = []
        for flow in await self.store.list_active_flows(project_id):
            try:
                flows.append(await self.get(flow.id, flow.version))
            except GraphConfigurationError as e:
                logger.error(f"Skipping flow {flow.id}: {e}")
        return flows

    def register(self, executable: ExecutableFlow) -> None:
        self._compiled[(executable.id, executable.version)] = executable

    def invalidate(self, flow_id: Optional[str] = None) -> None:
        if flow_id is None:
            self._compiled.clear()
            return
        for key in [k for k in self._compiled if k[0] == flow_id]:
            del self._compiled[key]
