"""Tests for the single-process JSON stores."""

import threading

from durable.callbacks.models import CorrelationToken
from durable.callbacks.store import FileCorrelationStore
from durable.filestore import JsonlQueue, file_key, identifier_from
from durable.orchestration.models import HistoryEvent, HistoryEventType, OrchestrationInstance
from durable.orchestration.store import FileInstanceStore


def _event(name: str) -> HistoryEvent:
    return HistoryEvent(type=HistoryEventType.EVENT_RAISED, name=name)


class TestFileKeys:
    def test_identifiers_survive_quoting(self):
        name = file_key("@Counter@a/b") + ".json"

        assert "/" not in name
        assert identifier_from(name, ".json") == "@Counter@a/b"


class TestJsonlQueue:
    """Peek and acknowledge semantics of the on-disk queue."""

    def test_peek_does_not_consume(self, tmp_path):
        queue = JsonlQueue(tmp_path, HistoryEvent, lock=threading.Lock())
        queue.append("k", _event("a"))
        queue.append("k", _event("b"))

        assert [e.name for e in queue.peek("k")] == ["a", "b"]
        assert [e.name for e in queue.peek("k")] == ["a", "b"]
        assert queue.keys() == ["k"]

    def test_ack_drops_prefix_and_removes_empty_file(self, tmp_path):
        queue = JsonlQueue(tmp_path, HistoryEvent, lock=threading.Lock())
        for name in ("a", "b", "c"):
            queue.append("k", _event(name))

        queue.ack("k", 2)
        assert [e.name for e in queue.peek("k")] == ["c"]

        queue.ack("k", 1)
        assert queue.peek("k") == []
        assert not queue.path("k").exists()

    def test_malformed_lines_are_skipped(self, tmp_path):
        queue = JsonlQueue(tmp_path, HistoryEvent, lock=threading.Lock())
        queue.append("k", _event("a"))
        with queue.path("k").open("a", encoding="utf-8") as handle:
            handle.write("{broken\n")
        queue.append("k", _event("b"))

        assert [e.name for e in queue.peek("k")] == ["a", "b"]
        queue.ack("k", 2)
        assert queue.peek("k") == []


class TestFileInstanceStore:
    """Snapshots and inboxes of orchestration instances."""

    def test_save_load_list_and_delete(self, tmp_path):
        store = FileInstanceStore(tmp_path)
        store.save(OrchestrationInstance(instance_id="parent:1", name="Child"))
        store.append_inbox("parent:1", _event("x"))

        assert store.list_instance_ids() == ["parent:1"]
        assert store.load("parent:1").name == "Child"
        assert len(store.peek_inbox("parent:1")) == 1

        store.delete("parent:1")

        assert store.load("parent:1") is None
        assert store.peek_inbox("parent:1") == []
        assert store.list_instance_ids() == []

    def test_corrupt_snapshot_reads_as_missing(self, tmp_path):
        store = FileInstanceStore(tmp_path)
        (tmp_path / "broken.json").write_text("{", encoding="utf-8")

        assert store.load("broken") is None

    def test_claim_execution_swaps_only_the_expected_run(self, tmp_path):
        store = FileInstanceStore(tmp_path)

        assert store.claim_execution("parent:1", None, "run-1")
        assert not store.claim_execution("parent:1", None, "run-2")
        assert store.claim_execution("parent:1", "run-1", "run-2")
        assert not store.claim_execution("parent:1", "run-1", "run-3")
        assert store.list_instance_ids() == []

        store.delete("parent:1")
        assert store.claim_execution("parent:1", None, "run-3")

    def test_concurrent_claims_have_one_winner(self, tmp_path):
        store = FileInstanceStore(tmp_path)
        won = []

        def claim(run):
            if store.claim_execution("a", None, run):
                won.append(run)

        threads = [threading.Thread(target=claim, args=(f"run-{n}",)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(won) == 1


class TestFileCorrelationStore:
    """Token records on disk."""

    def test_create_consume_and_delete(self, tmp_path):
        store = FileCorrelationStore(tmp_path)

        assert store.create(CorrelationToken.issue("t1", "inst", "ApprovalResult"))
        assert not store.create(CorrelationToken.issue("t1", "inst", "ApprovalResult"))
        assert store.mark_consumed("t1").consumed is True
        assert store.mark_consumed("t1") is None
        assert store.mark_consumed("unknown") is None

        store.delete("t1")
        assert store.load("t1") is None
