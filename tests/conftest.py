"""
Pytest configuration and fixtures for pyconveyor tests.

Provides reusable fixtures for storage backends, the event bus, registries,
test steps and segment batches.
"""

import os
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path
from uuid import uuid4

import pytest
from hypothesis import strategies as st

from pyconveyor.cache import InMemoryNodeOutputCache
from pyconveyor.events import Event, EventBus, EventType
from pyconveyor.executor import WorkflowExecutor
from pyconveyor.models import Backoff, JobOptions
from pyconveyor.notifications import NotificationFanout, NotificationRelay
from pyconveyor.steps import (
    DuplicateSegmentStep,
    RuleBasedFilterStep,
    Step,
    StepContext,
    StepRegistry,
    StepResult,
)
from pyconveyor.storage import (
    InMemoryExecutionStore,
    InMemoryJobStore,
    RedisJobStore,
    SqliteExecutionStore,
    SqliteJobStore,
)


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


# ============================================================================
# Storage
# ============================================================================


@pytest.fixture
async def job_store() -> AsyncGenerator[InMemoryJobStore, None]:
    """In-memory job store with automatic cleanup."""
    store = InMemoryJobStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_job_store() -> AsyncGenerator[SqliteJobStore, None]:
    """SQLite in-memory job store with automatic cleanup."""
    store = await SqliteJobStore.in_memory()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite", "redis"])
async def any_job_store(request) -> AsyncGenerator:
    """Each job store backend in turn.

    The Redis backend runs only when PYCONVEYOR_TEST_REDIS_URL points at a
    server; each test gets its own key prefix.
    """
    if request.param == "memory":
        store = InMemoryJobStore()
    elif request.param == "sqlite":
        store = await SqliteJobStore.in_memory()
    else:
        redis_url = os.getenv("PYCONVEYOR_TEST_REDIS_URL")
        if not redis_url:
            pytest.skip("PYCONVEYOR_TEST_REDIS_URL not set")
        store = RedisJobStore(redis_url, prefix=f"pyconveyor-test-{uuid4().hex}")
        await store.connect()
    yield store
    if request.param == "redis":
        await store.reset()
    await store.close()


@pytest.fixture
async def execution_store() -> AsyncGenerator[InMemoryExecutionStore, None]:
    store = InMemoryExecutionStore()
    yield store
    await store.reset()


@pytest.fixture(params=["memory", "sqlite"])
async def any_execution_store(request) -> AsyncGenerator:
    """Each execution store backend in turn."""
    if request.param == "memory":
        store = InMemoryExecutionStore()
    else:
        store = await SqliteExecutionStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def cache() -> InMemoryNodeOutputCache:
    return InMemoryNodeOutputCache()


# ============================================================================
# Events and notifications
# ============================================================================


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus):
        self.events: list[Event] = []
        for event_type in EventType:
            bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: EventType) -> list[Event]:
        return [event for event in self.events if event.type == event_type]

    def types(self) -> list[EventType]:
        return [event.type for event in self.events]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def fanout(bus: EventBus) -> NotificationFanout:
    """Fan-out fed by the bus through a relay."""
    fanout = NotificationFanout()
    NotificationRelay(fanout).attach(bus)
    return fanout


# ============================================================================
# Steps
# ============================================================================


class EmbedStep(Step):
    """Adds a fake embedding to every item and counts its invocations."""

    step_type = "embed"
    name = "Fake Embedding"

    def __init__(self):
        self.calls = 0
        self.received: list[int] = []

    async def execute(self, items, context: StepContext) -> StepResult:
        self.calls += 1
        self.received.append(len(items))
        embedded = [{**item, "embedding": [float(len(item.get("content", "")))]} for item in items]
        return StepResult(items=embedded, metrics={"embedded": len(embedded)})


class FailingStep(Step):
    """Always raises."""

    step_type = "embed"
    name = "Broken Embedding"

    def __init__(self, message: str = "embedding service unavailable"):
        self.calls = 0
        self.message = message

    async def execute(self, items, context: StepContext) -> StepResult:
        self.calls += 1
        raise RuntimeError(self.message)


class CountingStep(Step):
    """Passes items through unchanged and records each call."""

    def __init__(self, step_type: str = "passthrough"):
        self.step_type = step_type
        self.calls: list[str] = []

    async def execute(self, items, context: StepContext) -> StepResult:
        self.calls.append(context.node_id)
        return StepResult(items=list(items), metrics={"count": len(items)})


@pytest.fixture
def embed_step() -> EmbedStep:
    return EmbedStep()


@pytest.fixture
def step_registry(embed_step: EmbedStep) -> StepRegistry:
    """Registry with dedup, rule filter and the fake embedding step."""
    return StepRegistry([DuplicateSegmentStep(), RuleBasedFilterStep(), embed_step])


@pytest.fixture
def executor(execution_store, step_registry, cache, bus) -> WorkflowExecutor:
    return WorkflowExecutor(execution_store, step_registry, cache, bus)


# ============================================================================
# Data
# ============================================================================


def make_segments(count: int = 10, duplicates: int = 2) -> list[dict]:
    """Build ``count`` segments where the last ``duplicates`` repeat earlier ones.

    Segment 1 is a short "Page 1" footer so a rule filter can drop it.
    """
    unique = count - duplicates
    segments = [
        {"id": f"seg-{i}", "content": f"Segment number {i} talks about topic {i} in detail"}
        for i in range(unique)
    ]
    segments[1]["content"] = "Page 1"
    for i in range(duplicates):
        original = segments[i + 2]
        segments.append({"id": f"dup-{i}", "content": original["content"]})
    return segments


INGEST_STEPS = [
    ("dedup", "duplicate_segment", {"method": "hash"}),
    (
        "filter",
        "rule_based_filter",
        {"rules": [{"name": "page-footer", "pattern": r"^page \d+$", "action": "remove"}]},
    ),
    ("embed", "embed", {}),
]


@pytest.fixture
def segments() -> list[dict]:
    return make_segments()


@pytest.fixture
def fast_retry_options() -> JobOptions:
    """Three attempts with millisecond backoff so retry tests stay fast."""
    return JobOptions(attempts=3, backoff=Backoff.exponential(5))


# Hypothesis strategies for property-based testing

segment_text = st.text(
    alphabet=st.characters(whitelist_categories=("Lu", "Ll", "Nd", "Zs")),
    min_size=0,
    max_size=40,
)


@st.composite
def segment_batches(draw, max_size: int = 20):
    """Strategy for lists of segment items with possibly repeated content."""
    contents = draw(st.lists(segment_text, min_size=0, max_size=max_size))
    return [{"id": f"seg-{i}", "content": content} for i, content in enumerate(contents)]
