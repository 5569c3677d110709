"""Tests for the approval demo building blocks: data sets, payloads and notifiers."""

import json
import random

import httpx
import pytest

from durable.approval.datasets import PALETTE, DataSetStore, ordered_grid, random_grid
from durable.approval.models import ApprovalInput, ApprovalRequest, DataFile
from durable.approval.notifications import (
    ApprovalConfirmedNotification,
    ApprovalRequestNotification,
    LoggingNotifier,
    NotificationError,
    WebhookNotifier,
    notification_adapter,
)


class TestDataSets:
    """Colour grids and their on-disk store."""

    def test_random_grid_shape_and_palette(self):
        grid = random_grid(3, 4, rng=random.Random(7))

        assert len(grid) == 4
        assert all(len(row) == 3 for row in grid)
        assert {cell for row in grid for cell in row} <= set(PALETTE)

    def test_ordered_grid_groups_colours_in_palette_order(self):
        grid = [["blue", "red"], ["violet", "red"], ["green", "orange"]]

        assert ordered_grid(grid) == [["red", "red"], ["orange", "green"], ["blue", "violet"]]

    def test_ordered_grid_rejects_unknown_colours(self):
        with pytest.raises(ValueError):
            ordered_grid([["red", "magenta"]])

    def test_empty_grid_stays_empty(self):
        assert ordered_grid([]) == []

    def test_store_writes_under_orchestration_and_kind(self, tmp_path):
        store = DataSetStore(tmp_path)
        path = store.write("inst/1", DataSetStore.UNORDERED, "file-1.json", [["red"]])

        assert path.parent == tmp_path / "inst%2F1" / "unordered"
        assert json.loads(path.read_text()) == [["red"]]
        assert store.read("inst/1", DataSetStore.UNORDERED, "file-1.json") == [["red"]]
        assert store.exists("inst/1", DataSetStore.UNORDERED, "file-1.json")
        assert not store.exists("inst/1", DataSetStore.ORDERED, "file-1.json")

    def test_missing_data_set_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DataSetStore(tmp_path).read("inst", DataSetStore.ORDERED, "file-9.json")


class TestPayloads:
    """Aliased payload models exchanged with activities."""

    def test_request_lists_numbered_files(self):
        request = ApprovalRequest.model_validate({"orchestrationId": "abc", "numDataFiles": 2})

        assert [f.model_dump(by_alias=True) for f in request.data_files()] == [
            {"fileName": "file-1.json", "orchestrationId": "abc"},
            {"fileName": "file-2.json", "orchestrationId": "abc"},
        ]

    def test_input_validation(self):
        assert ApprovalInput.model_validate({}).num_data_files is None
        with pytest.raises(ValueError):
            ApprovalInput.model_validate({"numDataFiles": 0})
        with pytest.raises(ValueError):
            ApprovalInput.model_validate({"timeoutSeconds": -1})

    def test_data_file_accepts_field_names(self):
        assert DataFile(file_name="a", orchestration_id="b").model_dump(by_alias=True) == {
            "fileName": "a",
            "orchestrationId": "b",
        }


def _request() -> ApprovalRequestNotification:
    return ApprovalRequestNotification(
        sender="sender@example.com",
        recipient="approver@example.com",
        subject="approve?",
        orchestration_id="inst-1",
        approved_url="http://testserver/callback/t?result=Approved",
        rejected_url="http://testserver/callback/t?result=Rejected",
        attachments=["file-1.json"],
    )


class TestNotifiers:
    """Tagged templates and delivery backends."""

    def test_templates_are_discriminated_by_kind(self):
        payload = notification_adapter.dump_python(_request(), mode="json")
        parsed = notification_adapter.validate_python(
            {**payload, "kind": "approval_confirmed", "ordered_files": ["file-1.json"]}
        )

        assert payload["kind"] == "approval_request"
        assert isinstance(parsed, ApprovalConfirmedNotification)

    @pytest.mark.asyncio
    async def test_logging_notifier_keeps_history(self):
        notifier = LoggingNotifier()
        await notifier.send(_request())

        assert notifier.last("approval_request", "inst-1") is notifier.sent[0]
        assert notifier.last("approval_request", "other") is None
        assert notifier.last("rejection_confirmed") is None

    @pytest.mark.asyncio
    async def test_webhook_posts_json(self):
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        notifier = WebhookNotifier("https://hooks.example/notify", transport=httpx.MockTransport(handler))
        await notifier.send(_request())

        assert received[0]["kind"] == "approval_request"
        assert received[0]["approved_url"].endswith("result=Approved")

    @pytest.mark.asyncio
    async def test_webhook_rejection_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
        notifier = WebhookNotifier("https://hooks.example/notify", transport=transport)

        with pytest.raises(NotificationError) as excinfo:
            await notifier.send(_request())

        assert excinfo.value.code == "webhook_rejected"
        assert excinfo.value.details["status"] == 503

    @pytest.mark.asyncio
    async def test_unreachable_webhook_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        notifier = WebhookNotifier("https://hooks.example/notify", transport=httpx.MockTransport(handler))

        with pytest.raises(NotificationError) as excinfo:
            await notifier.send(_request())

        assert excinfo.value.code == "webhook_unreachable"
