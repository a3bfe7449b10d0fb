"""Pytest configuration and fixtures."""

import pytest
from typing import Any, Dict, List, Optional

from clinicflow.core.execution_engine import ExecutionEngine
from clinicflow.core.execution_tracker import ExecutionTracker
from clinicflow.core.flow_manager import FlowManager
from clinicflow.integrations.datastore import SqlDataStore
from clinicflow.nodes.base import NodeServices
from clinicflow.storage.database import configure_database, create_tables, reset_database_engine


class FakeHttpClient:
    """Records requests and answers them from a queue of canned responses."""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.requests: List[Dict[str, Any]] = []

    def request(self, method, url, headers=None, json_body=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "json": json_body})
        response = self.responses.pop(0) if self.responses else {"status": 200, "ok": True, "data": {}}
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


class FakeTextGenerator:
    """Returns a fixed text and remembers the prompts it was given."""

    api_key = "test-key"

    def __init__(self, text: str = "Looks fine", model: str = "fake-model"):
        self.text = text
        self.model = model
        self.calls: List[Dict[str, Any]] = []

    def generate(self, prompt, message, model=None):
        self.calls.append({"prompt": prompt, "message": message, "model": model})
        return {"text": self.text, "model": model or self.model}


@pytest.fixture
def temp_db(tmp_path):
    """Bind the module-level engine to a temporary SQLite file with all tables created."""
    db_path = tmp_path / "clinicflow_test.db"
    configure_database(f"sqlite:///{db_path}")
    create_tables()

    yield db_path

    reset_database_engine()


@pytest.fixture
def http_client():
    return FakeHttpClient()


@pytest.fixture
def text_generator():
    return FakeTextGenerator()


@pytest.fixture
def services(temp_db, http_client, text_generator):
    """Node collaborators with fakes for the outside world and a real data store."""
    return NodeServices(
        data_store=SqlDataStore(),
        http_client=http_client,
        text_generator=text_generator,
        sleep=lambda seconds: None
    )


@pytest.fixture
def flow_manager(temp_db):
    return FlowManager()


@pytest.fixture
def tracker(temp_db):
    return ExecutionTracker()


@pytest.fixture
def execution_engine(flow_manager, tracker, services):
    """An ExecutionEngine with a small worker pool and a low visit limit."""
    engine = ExecutionEngine(
        flow_manager=flow_manager,
        tracker=tracker,
        services=services,
        max_concurrent_executions=2,
        max_node_visits=5
    )
    yield engine
    engine.shutdown()
