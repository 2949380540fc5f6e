# /chatflow/workflows/handlers/conditions.py

from chatflow.models.execution import NodeExecutionResult
from chatflow.models.flow import EdgeLabel, NodeType
from chatflow.workflows.compiler import ExecutableNode
from chatflow.workflows.conditions import (
    ConditionError,
    ConditionExpression,
    ExpressionEvaluationError,
    evaluate_condition,
)
from chatflow.workflows.context_manager import well_known_fields
from chatflow.workflows.errors import GraphConfigurationError, HandlerRuntimeError
from chatflow.workflows.handlers.base import NodeHandler, StepContext


class ConditionHandler(NodeHandler):
    """Routes to the 'true' or 'false' edge."""

    node_types = (NodeType.CONDITION,)

    def _evaluate(self, step: StepContext, node: ExecutableNode) -> bool:
        config = node.config
        expression = config.get("expression")
        if expression:
            namespace = dict(well_known_fields(step.context))
            namespace.update(step.variables.namespace())
            return ConditionExpression(expression).evaluate(namespace)

        left = step.lookup(config["variable"])
        right = step.resolve(config.get("value"))
        return evaluate_condition(left, config["operator"], right, bool(config.get("case_sensitive", False)))

    async def execute(self, step: StepContext, node: ExecutableNode) -> NodeExecutionResult:
        try:
            outcome = self._evaluate(step, node)
        except (ConditionError, KeyError) as e:
            raise GraphConfigurationError(f"Condition '{node.id}' is misconfigured: {e}", node.id) from e
        except ExpressionEvaluationError as e:
            raise HandlerRuntimeError(f"Condition '{node.id}' failed: {e}", node.id) from e

        label = EdgeLabel.TRUE.value if outcome else EdgeLabel.FALSE.value
        target = step.flow.edge(node.id, label)
        if target is None:
            raise GraphConfigurationError(f"Condition '{node.id}' has no '{label}' branch", node.id)
        return NodeExecutionResult.goto(target, result=outcome)
