"""Tests for the orchestration engine running against the file store."""

import asyncio
from datetime import timedelta

import pytest

from conftest import eventually
from durable.lease import MemoryInstanceLease, instance_lease_key
from durable.orchestration.engine import OrchestrationEngine
from durable.orchestration.exceptions import (
    ActivityFailure,
    DuplicateInstanceError,
    InstanceNotFoundError,
    SubOrchestrationFailure,
    UnknownFunctionError,
)
from durable.orchestration.models import (
    HistoryEvent,
    HistoryEventType,
    OrchestrationInstance,
    OrchestrationStatus,
)
from durable.orchestration.registry import FunctionRegistry
from durable.orchestration.retries import RetryPolicy
from durable.orchestration.scheduler import ActivityScheduler
from durable.schemas import utc_now


@pytest.fixture(autouse=True)
def functions(registry: FunctionRegistry) -> FunctionRegistry:
    @registry.activity("SayHello")
    def say_hello(ctx, name):
        return f"Hello {name}"

    @registry.activity("WhoAmI")
    async def who_am_i(ctx, payload):
        return ctx.instance_id

    @registry.orchestrator("HelloSequence")
    def hello_sequence(ctx):
        cities = ctx.get_input() or ["Tokyo", "Seattle", "London"]
        results = []
        for city in cities:
            results.append((yield ctx.call_activity("SayHello", city)))
        return results

    @registry.orchestrator("WaitForGo")
    def wait_for_go(ctx):
        ctx.set_custom_status("waiting")
        answer = yield ctx.wait_for_external_event("Go")
        return {"answer": answer}

    return registry


class TestStartAndComplete:
    """Basic lifecycle of a started instance."""

    @pytest.mark.asyncio
    async def test_sequence_completes_with_results(self, engine):
        instance_id = await engine.start_instance("HelloSequence")
        instance = await engine.wait_for_completion(instance_id, timeout=5)

        assert instance.status == OrchestrationStatus.COMPLETED
        assert instance.output == ["Hello Tokyo", "Hello Seattle", "Hello London"]

    @pytest.mark.asyncio
    async def test_history_records_each_activity_once(self, engine):
        instance_id = await engine.start_instance("HelloSequence", ["Paris"])
        instance = await engine.wait_for_completion(instance_id, timeout=5)

        types = [event.type for event in instance.history]
        assert types.count(HistoryEventType.TASK_SCHEDULED) == 1
        assert types.count(HistoryEventType.TASK_COMPLETED) == 1
        assert types[-1] == HistoryEventType.EXECUTION_COMPLETED
        assert [event.seq for event in instance.history] == list(range(1, len(types) + 1))

    @pytest.mark.asyncio
    async def test_activity_sees_its_instance_id(self, engine, registry):
        @registry.orchestrator("Identify")
        def identify(ctx):
            return (yield ctx.call_activity("WhoAmI"))

        instance = await engine.wait_for_completion(
            await engine.start_instance("Identify", instance_id="me"), timeout=5
        )

        assert instance.output == "me"

    @pytest.mark.asyncio
    async def test_unknown_orchestrator_is_rejected(self, engine):
        with pytest.raises(UnknownFunctionError):
            await engine.start_instance("NoSuchThing")

    @pytest.mark.asyncio
    async def test_status_of_unknown_instance_is_none(self, engine):
        assert engine.get_status("missing") is None
        with pytest.raises(InstanceNotFoundError):
            await engine.wait_for_completion("missing", timeout=0.1)

    @pytest.mark.asyncio
    async def test_wait_times_out_for_pending_instance(self, engine):
        instance_id = await engine.start_instance("WaitForGo")

        with pytest.raises(TimeoutError):
            await engine.wait_for_completion(instance_id, timeout=0.2)

    @pytest.mark.asyncio
    async def test_completion_listener_receives_final_snapshot(self, engine):
        seen: list[OrchestrationInstance] = []

        async def listener(instance):
            seen.append(instance)

        engine.add_completion_listener(listener)
        instance_id = await engine.start_instance("HelloSequence", ["Oslo"])
        await engine.wait_for_completion(instance_id, timeout=5)

        await eventually(lambda: seen)
        assert seen[0].instance_id == instance_id
        assert seen[0].status == OrchestrationStatus.COMPLETED


class TestSingletonsAndEvents:
    """Caller-chosen ids, raised events and termination."""

    @pytest.mark.asyncio
    async def test_duplicate_start_of_active_instance_fails(self, engine):
        await engine.start_instance("WaitForGo", instance_id="singleton")

        with pytest.raises(DuplicateInstanceError):
            await engine.start_instance("WaitForGo", instance_id="singleton")

    @pytest.mark.asyncio
    async def test_raised_event_resumes_instance(self, engine):
        instance_id = await engine.start_instance("WaitForGo")
        await eventually(lambda: engine.get_status(instance_id).custom_status == "waiting")

        assert await engine.raise_event(instance_id, "Go", {"ok": True})
        instance = await engine.wait_for_completion(instance_id, timeout=5)

        assert instance.output == {"answer": {"ok": True}}

    @pytest.mark.asyncio
    async def test_event_raised_right_after_start_is_buffered(self, engine):
        instance_id = await engine.start_instance("WaitForGo")
        await engine.raise_event(instance_id, "Go", "early")

        instance = await engine.wait_for_completion(instance_id, timeout=5)
        assert instance.output == {"answer": "early"}

    @pytest.mark.asyncio
    async def test_finished_instance_can_be_restarted(self, engine):
        await engine.start_instance("HelloSequence", ["A"], instance_id="again")
        first = await engine.wait_for_completion("again", timeout=5)

        await engine.start_instance("HelloSequence", ["B"], instance_id="again")
        second = await engine.wait_for_completion("again", timeout=5)

        assert first.output == ["Hello A"]
        assert second.output == ["Hello B"]

    @pytest.mark.asyncio
    async def test_event_for_finished_instance_is_refused(self, engine):
        instance_id = await engine.start_instance("HelloSequence", ["A"])
        await engine.wait_for_completion(instance_id, timeout=5)

        assert await engine.raise_event(instance_id, "Go", "late") is False

    @pytest.mark.asyncio
    async def test_event_for_unknown_instance_raises(self, engine):
        with pytest.raises(InstanceNotFoundError):
            await engine.raise_event("nobody", "Go")

    @pytest.mark.asyncio
    async def test_terminate_marks_instance_terminated(self, engine):
        instance_id = await engine.start_instance("WaitForGo")

        assert await engine.terminate(instance_id, "operator stop")
        instance = await engine.wait_for_completion(instance_id, timeout=5)

        assert instance.status == OrchestrationStatus.TERMINATED
        assert instance.output == "operator stop"
        assert await engine.terminate(instance_id) is False


class TestRestartedExecutions:
    """A restarted id never sees results produced for its previous run."""

    @pytest.mark.asyncio
    async def test_restart_runs_sub_orchestration_again(self, engine, registry):
        calls = []

        @registry.activity("Stamp")
        def stamp(ctx, value):
            calls.append(value)
            return value

        @registry.orchestrator("StampChild")
        def stamp_child(ctx):
            return (yield ctx.call_activity("Stamp", ctx.get_input()))

        @registry.orchestrator("StampParent")
        def stamp_parent(ctx):
            return (yield ctx.call_sub_orchestrator("StampChild", ctx.get_input()))

        await engine.start_instance("StampParent", "first", instance_id="stamped")
        first = await engine.wait_for_completion("stamped", timeout=5)
        await engine.start_instance("StampParent", "second", instance_id="stamped")
        second = await engine.wait_for_completion("stamped", timeout=5)

        assert (first.output, second.output) == ("first", "second")
        assert calls == ["first", "second"]
        assert first.execution_id != second.execution_id
        assert engine.get_status("stamped:1").parent_execution_id == second.execution_id

    @pytest.mark.asyncio
    async def test_late_activity_result_of_terminated_run_is_dropped(
        self, engine, registry, instance_store
    ):
        gates = {"old": asyncio.Event(), "new": asyncio.Event()}
        started, returned = [], []

        @registry.activity("Slow")
        async def slow(ctx, value):
            started.append(value)
            await gates[value].wait()
            returned.append(value)
            return value

        @registry.orchestrator("Runner")
        def runner(ctx):
            return (yield ctx.call_activity("Slow", ctx.get_input()))

        await engine.start_instance("Runner", "old", instance_id="runner")
        await eventually(lambda: "old" in started)
        assert await engine.terminate("runner")
        await engine.wait_for_completion("runner", timeout=5)

        await engine.start_instance("Runner", "new", instance_id="runner")
        await eventually(lambda: "new" in started)
        gates["old"].set()
        await eventually(lambda: "old" in returned and not instance_store.peek_inbox("runner"))
        assert not engine.get_status("runner").is_terminal

        gates["new"].set()
        instance = await engine.wait_for_completion("runner", timeout=5)

        assert instance.output == "new"
        completed = [e.result for e in instance.history if e.type == HistoryEventType.TASK_COMPLETED]
        assert completed == ["new"]

    @pytest.mark.asyncio
    async def test_restart_replaces_execution_claim(self, engine, instance_store):
        await engine.start_instance("HelloSequence", ["A"], instance_id="claimed")
        first = await engine.wait_for_completion("claimed", timeout=5)

        assert not instance_store.claim_execution("claimed", None, "intruder")

        await engine.start_instance("HelloSequence", ["B"], instance_id="claimed")
        second = await engine.wait_for_completion("claimed", timeout=5)

        assert not instance_store.claim_execution("claimed", first.execution_id, "intruder")
        started = [e for e in second.history if e.type == HistoryEventType.EXECUTION_STARTED]
        assert [e.execution_id for e in started] == [second.execution_id]


class TestSubOrchestrationsAndTimers:
    """Child instances and durable timers."""

    @pytest.mark.asyncio
    async def test_child_result_flows_back_to_parent(self, engine, registry):
        @registry.orchestrator("Parent")
        def parent(ctx):
            greetings = yield ctx.call_sub_orchestrator("HelloSequence", ["Rome"])
            return {"child": greetings}

        parent_id = await engine.start_instance("Parent", instance_id="parent")
        instance = await engine.wait_for_completion(parent_id, timeout=5)

        assert instance.output == {"child": ["Hello Rome"]}
        child = engine.get_status("parent:1")
        assert child is not None
        assert child.parent_instance_id == "parent"
        assert child.status == OrchestrationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_child_failure_is_raised_in_parent(self, engine, registry):
        @registry.orchestrator("Explodes")
        def explodes(ctx):
            raise RuntimeError("child broke")

        @registry.orchestrator("Guardian")
        def guardian(ctx):
            try:
                yield ctx.call_sub_orchestrator("Explodes")
            except SubOrchestrationFailure as exc:
                return exc.error_type
            return "no error"

        instance = await engine.wait_for_completion(
            await engine.start_instance("Guardian"), timeout=5
        )

        assert instance.output == "RuntimeError"

    @pytest.mark.asyncio
    async def test_unknown_child_fails_parent_task(self, engine, registry):
        @registry.orchestrator("Orphan")
        def orphan(ctx):
            try:
                yield ctx.call_sub_orchestrator("Missing")
            except SubOrchestrationFailure as exc:
                return exc.error_type
            return "no error"

        instance = await engine.wait_for_completion(
            await engine.start_instance("Orphan"), timeout=5
        )

        assert instance.output == "UnknownFunctionError"

    @pytest.mark.asyncio
    async def test_timer_fires(self, engine, registry):
        @registry.orchestrator("Sleeper")
        def sleeper(ctx):
            fired_at = yield ctx.create_timer(timedelta(milliseconds=50))
            return fired_at is not None

        instance = await engine.wait_for_completion(
            await engine.start_instance("Sleeper"), timeout=5
        )

        assert instance.output is True
        types = [event.type for event in instance.history]
        assert HistoryEventType.TIMER_CREATED in types
        assert HistoryEventType.TIMER_FIRED in types


class TestActivityFailures:
    """Retries and failure propagation through the engine."""

    @pytest.mark.asyncio
    async def test_retry_policy_recovers_flaky_activity(self, engine, registry):
        @registry.activity("Flaky", retry_policy=RetryPolicy(max_attempts=3))
        def flaky(ctx, payload):
            if ctx.attempt < 3:
                raise ConnectionError(f"attempt {ctx.attempt}")
            return ctx.attempt

        @registry.orchestrator("UsesFlaky")
        def uses_flaky(ctx):
            return (yield ctx.call_activity("Flaky"))

        instance = await engine.wait_for_completion(
            await engine.start_instance("UsesFlaky"), timeout=5
        )

        assert instance.status == OrchestrationStatus.COMPLETED
        assert instance.output == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_as_activity_failure(self, engine, registry):
        @registry.activity("AlwaysFails")
        def always_fails(ctx, payload):
            raise ValueError("nope")

        @registry.orchestrator("Catches")
        def catches(ctx):
            try:
                yield ctx.call_activity("AlwaysFails", retry_policy=RetryPolicy(max_attempts=2))
            except ActivityFailure as exc:
                return exc.details
            return None

        instance = await engine.wait_for_completion(
            await engine.start_instance("Catches"), timeout=5
        )

        assert instance.output["error_type"] == "ValueError"
        assert instance.output["attempts"] == 2

    @pytest.mark.asyncio
    async def test_uncaught_failure_fails_instance(self, engine, registry):
        @registry.orchestrator("Careless")
        def careless(ctx):
            yield ctx.call_activity("NotRegistered")

        instance = await engine.wait_for_completion(
            await engine.start_instance("Careless"), timeout=5
        )

        assert instance.status == OrchestrationStatus.FAILED
        assert instance.error["error_type"] == "ActivityFailure"


class TestRecoveryAndPurge:
    """Restart of unfinished work and removal of old instances."""

    @pytest.mark.asyncio
    async def test_recover_redispatches_outstanding_activity(self, registry, instance_store):
        idle_scheduler = ActivityScheduler(registry)
        crashed = OrchestrationEngine(registry, instance_store, idle_scheduler, poll_seconds=0.05)
        instance_id = await crashed.start_instance("HelloSequence", ["Lima"])
        await eventually(
            lambda: any(
                event.type == HistoryEventType.TASK_SCHEDULED
                for event in instance_store.load(instance_id).history
            )
        )
        await crashed.shutdown()

        scheduler = ActivityScheduler(registry)
        restarted = OrchestrationEngine(registry, instance_store, scheduler, poll_seconds=0.05)
        scheduler.start()
        try:
            assert await restarted.recover() == 1
            instance = await restarted.wait_for_completion(instance_id, timeout=5)
        finally:
            await restarted.shutdown()
            await scheduler.shutdown()

        assert instance.output == ["Hello Lima"]

    @pytest.mark.asyncio
    async def test_purge_removes_only_finished_instances(self, engine):
        done_id = await engine.start_instance("HelloSequence", ["X"])
        await engine.wait_for_completion(done_id, timeout=5)
        waiting_id = await engine.start_instance("WaitForGo")

        cutoff = utc_now() + timedelta(seconds=5)
        assert engine.purge_instances(finished_before=cutoff, dry_run=True) == [done_id]
        assert engine.get_status(done_id) is not None

        assert engine.purge_instances(finished_before=cutoff) == [done_id]
        assert engine.get_status(done_id) is None
        assert engine.get_status(waiting_id) is not None

    @pytest.mark.asyncio
    async def test_purge_keeps_recent_instances(self, engine):
        done_id = await engine.start_instance("HelloSequence", ["Y"])
        await engine.wait_for_completion(done_id, timeout=5)

        assert engine.purge_instances(finished_before=utc_now() - timedelta(hours=1)) == []


class TestSharedLease:
    """Engines sharing a store leave an owned instance to its driver."""

    @pytest.mark.asyncio
    async def test_event_from_second_engine_is_handled_by_owner(self, registry, instance_store):
        table: dict = {}
        schedulers = [ActivityScheduler(registry) for _ in range(2)]
        owner, other = (
            OrchestrationEngine(
                registry,
                instance_store,
                scheduler,
                lease=MemoryInstanceLease(name, table=table),
                poll_seconds=0.05,
            )
            for name, scheduler in zip(("worker-1", "worker-2"), schedulers)
        )
        for scheduler in schedulers:
            scheduler.start()
        try:
            instance_id = await owner.start_instance("WaitForGo")
            await eventually(lambda: instance_store.load(instance_id).custom_status == "waiting")
            assert table[instance_lease_key(instance_id)][0] == "worker-1"

            assert await other.raise_event(instance_id, "Go", "yes")
            instance = await other.wait_for_completion(instance_id, timeout=5)
            await eventually(lambda: instance_lease_key(instance_id) not in table)
        finally:
            for engine in (owner, other):
                await engine.shutdown()
            for scheduler in schedulers:
                await scheduler.shutdown()

        assert instance.output == {"answer": "yes"}


class TestInboxDedupe:
    """Duplicate deliveries never reach the history twice."""

    def test_duplicate_completion_and_event_id_are_dropped(self):
        instance = OrchestrationInstance(instance_id="dup", name="test")
        recorded = instance.append(
            HistoryEvent(type=HistoryEventType.TASK_COMPLETED, task_id=1, result="first")
        )
        fresh = HistoryEvent(type=HistoryEventType.EVENT_RAISED, name="Go")
        inbox = [
            HistoryEvent(type=HistoryEventType.TASK_COMPLETED, task_id=1, result="second"),
            recorded.model_copy(),
            fresh,
            HistoryEvent(type=HistoryEventType.TASK_COMPLETED, task_id=2, result="a"),
            HistoryEvent(type=HistoryEventType.TASK_COMPLETED, task_id=2, result="b"),
        ]

        kept = OrchestrationEngine._dedupe(instance, inbox)

        assert [event.event_id for event in kept[:1]] == [fresh.event_id]
        assert [(event.task_id, event.result) for event in kept[1:]] == [(2, "a")]
