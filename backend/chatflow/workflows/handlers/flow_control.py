# /chatflow/workflows/handlers/flow_control.py

from datetime import datetime, timedelta
from typing import Any, List, Tuple

from chatflow.config.settings import settings
from chatflow.models.execution import NodeExecutionResult, WaitType
from chatflow.models.flow import EdgeLabel, NodeType
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.conditions import loose_equals, to_number
from chatflow.workflows.errors import GraphConfigurationError
from chatflow.workflows.handlers.base import NodeHandler, StepContext


class DelayHandler(NodeHandler):
    """
    Schedules resumption instead of sleeping: the context waits with
    wait_type=delay until the sweep picks it up past its deadline.
    """

    node_types = (NodeType.FLOW_DELAY,)

    def _seconds(self, step: StepContext, node: ExecutableNode) -> float:
        config = node.config
        raw = step.lookup(config["delay_variable"]) if config.get("delay_variable") else config.get("delay_seconds")
        seconds = to_number(raw)
        if seconds is None or seconds < 0:
            raise GraphConfigurationError(f"Delay '{node.id}' resolved to an invalid duration: {raw!r}", node.id)
        return min(seconds, float(settings.max_delay_seconds))

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        seconds = self._seconds(step, node)
        next_node_id = step.flow.edge(node.id)
        if next_node_id is None:
            return NodeExecutionResult.end(success=True)
        if seconds == 0:
            return NodeExecutionResult.goto(next_node_id)
        deadline = datetime.utcnow() + timedelta(seconds=seconds)
        return NodeExecutionResult.wait_for(
            WaitType.DELAY, resume_node_id=next_node_id, deadline=deadline, delay_seconds=seconds
        )


class JumpHandler(NodeHandler):
    node_types = (NodeType.FLOW_JUMP,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        target = node.config.get("target")
        if step.flow.node(target) is None:
            raise GraphConfigurationError(f"Jump '{node.id}' targets unknown node '{target}'", node.id)
        return NodeExecutionResult.goto(target)


def _cases(node: ExecutableNode) -> List[Tuple[Any, str]]:
    """Cases are plain values or {"value": ..., "label": ...}; the edge label defaults to the value."""
    cases = []
    for case in node.config.get("cases") or []:
        if isinstance(case, dict):
            value = case.get("value")
            cases.append((value, str(case.get("label", value))))
        else:
            cases.append((case, str(case)))
    return cases


class SwitchHandler(NodeHandler):
    node_types = (NodeType.FLOW_SWITCH,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        value = step.lookup(node.config["variable"])
        case_sensitive = bool(node.config.get("case_sensitive", False))
        for case_value, label in _cases(node):
            if loose_equals(value, step.resolve(case_value), case_sensitive):
                target = step.flow.edge(node.id, label)
                if target is not None:
                    return NodeExecutionResult.goto(target, matched=label)
        return step.follow(node, matched=None)


class LoopHandler(NodeHandler):
    """
    Count or foreach iteration. The iteration index lives in a session
    variable, so a loop survives suspension inside its body.
    """

    node_types = (NodeType.FLOW_LOOP,)

    @staticmethod
    def state_key(node: ExecutableNode) -> str:
        return f"_loop_{node.id}"

    def _items(self, step: StepContext, node: ExecutableNode) -> List[Any]:
        config = node.config
        if config.get("mode", "count") == "foreach":
            items = step.lookup(config["items_variable"])
            if items is None:
                return []
            if isinstance(items, dict):
                return list(items.values())
            if isinstance(items, (list, tuple)):
                return list(items)
            return [items]
        count = int(to_number(step.resolve(config.get("count"))) or 0)
        return list(range(max(count, 0)))

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        config = node.config
        items = self._items(step, node)
        key = self.state_key(node)
        index = int(step.variables.get(key) or 0)

        if index < len(items):
            target = step.flow.edge(node.id, EdgeLabel.LOOP.value)
            if target is None:
                raise GraphConfigurationError(f"Loop '{node.id}' has no 'loop' branch", node.id)
            await step.variables.set(config.get("index_variable") or "loop_index", index)
            await step.variables.set(config.get("item_variable") or "loop_item", items[index])
            await step.variables.set(key, index + 1)
            return NodeExecutionResult.goto(target, index=index)

        # Reset so the loop can run again if the flow comes back to it
        await step.variables.set(key, 0)
        done = step.flow.edge(node.id, EdgeLabel.DONE.value)
        if done is not None:
            return NodeExecutionResult.goto(done, iterations=len(items))
        return step.follow(node, iterations=len(items))


class EndHandler(NodeHandler):
    node_types = (NodeType.FLOW_END,)

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        text = node.config.get("text")
        if text:
            await step.send(step.render(text))
        success = bool(node.config.get("success", True))
        return NodeExecutionResult.end(success=success, error=None if success else node.config.get("error"))
