"""Tests for job handlers, the job registry, the container and the auto-loader."""

import pytest

from conftest import INGEST_STEPS, FailingStep
from pyconveyor.events import EventType
from pyconveyor.executor import ExecutionFailedError, WorkflowExecutor
from pyconveyor.jobs import (
    BaseJob,
    Container,
    HandlerNotFoundError,
    InvalidJobDataError,
    JobAutoLoader,
    JobRegistry,
    ResolutionError,
    WorkflowJob,
)
from pyconveyor.models import Job, WorkflowDefinition
from pyconveyor.notifications import NotificationType
from pyconveyor.steps import DuplicateSegmentStep, RuleBasedFilterStep, StepRegistry


class ChunkingJob(BaseJob):
    job_type = "chunking"
    categories = ("document",)

    def __init__(self):
        self.payloads = []

    async def process(self, data):
        self.payloads.append(data)
        return {"chunks": len(data.get("text", "").split())}


class UnnamedJob(BaseJob):
    async def process(self, data):
        return None


class HiddenJob(BaseJob):
    job_type = "hidden"
    registrable = False

    async def process(self, data):
        return None


class NeedsArgumentsJob(BaseJob):
    job_type = "needs-arguments"

    def __init__(self, client):
        self.client = client

    async def process(self, data):
        return None


class PlainHandler:
    """Duck-typed handler without BaseJob."""

    job_type = "plain"
    registrable = True
    categories = ("maintenance",)

    async def process(self, data):
        return "done"


class NotAHandler:
    registrable = True


# ============================================================================
# BaseJob
# ============================================================================


def test_type_name():
    assert ChunkingJob.type_name() == "chunking"
    assert UnnamedJob.type_name() == "UnnamedJob"


@pytest.mark.asyncio
async def test_handle_runs_process():
    job = ChunkingJob()
    result = await job.handle(Job(id="j1", type="chunking", data={"text": "a b c"}))
    assert result == {"chunks": 3}
    assert job.payloads == [{"text": "a b c"}]


@pytest.mark.asyncio
async def test_handle_reraises():
    class Broken(BaseJob):
        async def process(self, data):
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await Broken().handle(Job(id="j1", type="Broken", data={}))


# ============================================================================
# JobRegistry
# ============================================================================


def test_registry_register_and_resolve():
    registry = JobRegistry()
    handler = ChunkingJob()

    assert registry.register(handler) == "chunking"
    assert registry.get_job("chunking") is handler
    assert "chunking" in registry
    assert len(registry) == 1
    assert registry.job_types() == ["chunking"]
    assert registry.get_all_jobs() == {"chunking": handler}


def test_registry_explicit_type_and_class_name_fallback():
    registry = JobRegistry()
    assert registry.register(UnnamedJob()) == "UnnamedJob"
    assert registry.register(UnnamedJob(), "alias") == "alias"
    assert registry.job_types() == ["UnnamedJob", "alias"]


def test_registry_replacement():
    registry = JobRegistry()
    first, second = ChunkingJob(), ChunkingJob()
    registry.register(first)
    registry.register(second)
    assert registry.get_job("chunking") is second


def test_registry_unknown_type():
    registry = JobRegistry()
    assert registry.is_empty()
    with pytest.raises(HandlerNotFoundError) as exc_info:
        registry.get_job("missing")
    assert exc_info.value.job_type == "missing"
    assert not exc_info.value.is_retryable()


# ============================================================================
# Container
# ============================================================================


def test_container_builds_without_factory_and_caches():
    container = Container()
    first = container.resolve(ChunkingJob)
    assert container.resolve(ChunkingJob) is first
    assert container.has(ChunkingJob)


def test_container_uses_factory_with_dependencies():
    container = Container()
    container.register_instance(str, "client")
    container.register(NeedsArgumentsJob, lambda c: NeedsArgumentsJob(c.resolve(str)))

    assert container.resolve(NeedsArgumentsJob).client == "client"


def test_container_wraps_construction_errors():
    container = Container()
    with pytest.raises(ResolutionError, match="NeedsArgumentsJob"):
        container.resolve(NeedsArgumentsJob)
    assert not container.has(NeedsArgumentsJob)


def test_container_register_replaces_cached_instance():
    container = Container()
    first = container.resolve(ChunkingJob)
    container.register(ChunkingJob, lambda c: ChunkingJob())
    assert container.resolve(ChunkingJob) is not first


# ============================================================================
# JobAutoLoader
# ============================================================================


def test_load_all_registers_and_skips():
    registry = JobRegistry()
    loader = JobAutoLoader(registry, Container())

    report = loader.load_all(
        [ChunkingJob, HiddenJob, NeedsArgumentsJob, PlainHandler, NotAHandler]
    )

    assert report.registered == ["chunking", "plain"]
    assert set(report.skipped) == {"HiddenJob", "NeedsArgumentsJob", "NotAHandler"}
    assert report.skipped["HiddenJob"] == "not registrable"
    assert report.skipped["NotAHandler"] == "no handle or process method"
    assert registry.job_types() == ["chunking", "plain"]


def test_load_by_category():
    registry = JobRegistry()
    loader = JobAutoLoader(registry, Container())

    report = loader.load_by_category(["maintenance"], [ChunkingJob, PlainHandler])

    assert report.registered == ["plain"]
    assert "chunking" not in registry


# ============================================================================
# WorkflowJob
# ============================================================================


@pytest.fixture
async def workflow_job(execution_store, cache, bus, embed_step):
    steps = StepRegistry([DuplicateSegmentStep(), RuleBasedFilterStep(), embed_step])
    executor = WorkflowExecutor(execution_store, steps, cache, bus)
    await execution_store.save_definition(
        WorkflowDefinition.pipeline("ingest", "Segment ingest", INGEST_STEPS)
    )
    return WorkflowJob(executor, bus)


@pytest.mark.asyncio
async def test_workflow_job_runs_definition(workflow_job, segments, recorder):
    result = await workflow_job.process(
        {"definitionId": "ingest", "items": segments, "executionId": "exec-1"}
    )

    assert result["id"] == "exec-1"
    assert result["status"] == "completed"
    assert result["metrics"]["itemsProcessed"] == 7
    # No documentId, no document events
    assert recorder.of_type(EventType.DOCUMENT_PROCESSING_STARTED) == []


@pytest.mark.asyncio
async def test_workflow_job_accepts_aliases(workflow_job, segments):
    result = await workflow_job.process({"workflowId": "ingest", "inputData": segments})
    assert result["metrics"]["itemsProcessed"] == 7


@pytest.mark.asyncio
async def test_workflow_job_publishes_document_events(workflow_job, segments, recorder, fanout):
    stream = fanout.connect("tab")
    await workflow_job.process(
        {
            "definitionId": "ingest",
            "items": segments,
            "executionId": "exec-1",
            "documentId": "doc-1",
            "datasetId": "ds-1",
            "userId": "u-1",
        }
    )

    [started] = recorder.of_type(EventType.DOCUMENT_PROCESSING_STARTED)
    [completed] = recorder.of_type(EventType.DOCUMENT_PROCESSING_COMPLETED)
    assert started.payload == {"documentId": "doc-1", "datasetId": "ds-1"}
    assert completed.payload["executionId"] == "exec-1"
    assert completed.payload["executionStatus"] == "completed"

    updates = [
        m.data
        for m in stream.drain()
        if m.type == NotificationType.DOCUMENT_PROCESSING_UPDATE
    ]
    assert [u["status"] for u in updates] == ["started", "completed"]
    assert all(u["documentId"] == "doc-1" and u["datasetId"] == "ds-1" for u in updates)


@pytest.mark.asyncio
async def test_workflow_job_reports_document_failure(
    execution_store, cache, bus, recorder, segments
):
    steps = StepRegistry([DuplicateSegmentStep(), RuleBasedFilterStep(), FailingStep()])
    executor = WorkflowExecutor(execution_store, steps, cache, bus)
    await execution_store.save_definition(
        WorkflowDefinition.pipeline("ingest", "Segment ingest", INGEST_STEPS)
    )

    with pytest.raises(ExecutionFailedError):
        await WorkflowJob(executor, bus).process(
            {"definitionId": "ingest", "items": segments, "documentId": "doc-1"}
        )

    [failed] = recorder.of_type(EventType.DOCUMENT_PROCESSING_FAILED)
    assert failed.payload["documentId"] == "doc-1"
    assert "embedding service unavailable" in failed.payload["error"]
    assert recorder.of_type(EventType.DOCUMENT_PROCESSING_COMPLETED) == []


@pytest.mark.asyncio
async def test_workflow_job_requires_definition(workflow_job):
    with pytest.raises(InvalidJobDataError):
        await workflow_job.process({"items": []})


@pytest.mark.asyncio
async def test_workflow_job_max_concurrency_option(workflow_job, segments):
    result = await workflow_job.process(
        {"definitionId": "ingest", "items": segments, "options": {"maxConcurrency": 1}}
    )
    assert result["status"] == "completed"


@pytest.mark.asyncio
async def test_workflow_job_handle_runs_under_job_id(workflow_job, segments, execution_store):
    job = Job(id="job-7", type="workflow", data={"definitionId": "ingest", "items": segments})

    first = await workflow_job.handle(job)
    second = await workflow_job.handle(job)

    assert first["id"] == second["id"] == "job-7"
    assert second["attempt"] == 2
    assert len(await execution_store.get_execution_attempts("job-7")) == 2
    assert "executionId" not in job.data


@pytest.mark.asyncio
async def test_workflow_job_handle_keeps_explicit_execution_id(workflow_job, segments):
    job = Job(
        id="job-8",
        type="workflow",
        data={"definitionId": "ingest", "items": segments, "executionId": "exec-9"},
    )
    result = await workflow_job.handle(job)
    assert result["id"] == "exec-9"
