import os
import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any chatflow imports, so the
# module-level Settings instance sees it.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"), override=True)

# Now it's safe to import the application and its components
from chatflow.main import app  # noqa: E402
from chatflow.models.execution import Subject  # noqa: E402
from chatflow.models.flow import FlowConnection, FlowGraph, FlowNode  # noqa: E402
from chatflow.services.store import InMemoryExecutionStore  # noqa: E402
from chatflow.workflows.engine import WorkflowEngine  # noqa: E402


def build_flow(flow_id, nodes, edges=(), **kwargs) -> FlowGraph:
    """
    nodes: (id, type) or (id, type, config) tuples
    edges: (source, target) or (source, target, label) tuples
    """
    return FlowGraph(
        id=flow_id,
        name=kwargs.pop("name", flow_id),
        nodes=[FlowNode(id=n[0], type=n[1], config=n[2] if len(n) > 2 else {}) for n in nodes],
        connections=[
            FlowConnection(id=f"{flow_id}-c{i}", source=e[0], target=e[1], label=e[2] if len(e) > 2 else None)
            for i, e in enumerate(edges)
        ],
        **kwargs,
    )


@pytest.fixture
def flow_builder():
    return build_flow


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def transport():
    """Chat transport double; send_message records every outbound message."""
    mock = AsyncMock()
    mock.send_message.return_value = "msg-1"
    mock.send_media.return_value = "msg-2"
    return mock


@pytest.fixture
def sent_texts(transport):
    """Returns the texts sent so far, in order."""
    def _texts():
        return [c.args[1] for c in transport.send_message.call_args_list]
    return _texts


@pytest.fixture
def subject():
    return Subject(chat_id="1001", user_id="u-1", username="alice", first_name="Alice")


@pytest.fixture
def engine(store, transport):
    """Engine over the in-memory store with retries that do not sleep."""
    return WorkflowEngine(store, transport, backoff_seconds=0, retry_attempts=3)


@pytest.fixture(scope="function")
def test_client(mocker, engine):
    """
    Provides a TestClient for API tests, with the engine swapped for the
    in-memory one above. Background queue workers never start.
    """
    mocker.patch("chatflow.utils.queue.RedisEventQueue.start_workers", new_callable=AsyncMock)
    mocker.patch("chatflow.utils.queue.RedisEventQueue.stop_workers", new_callable=AsyncMock)

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        app.state.engine = engine
        yield client
