"""End-to-end tests of the approval demo on a fully wired container."""

from dataclasses import replace

import pytest

from conftest import eventually
from durable.approval.counter import COUNTER_ID
from durable.approval.datasets import PALETTE, DataSetStore
from durable.approval.models import APPROVAL_ORCHESTRATION
from durable.approval.notifications import LoggingNotifier, NotificationError
from durable.orchestration.models import OrchestrationStatus


def _token_from(url: str) -> str:
    return url.split("/callback/", 1)[1].split("?", 1)[0]


async def _approval_request(notifier: LoggingNotifier, instance_id: str):
    return await eventually(lambda: notifier.last("approval_request", instance_id))


class TestApprovalWorkflow:
    """Approve, reject and timeout paths."""

    @pytest.mark.asyncio
    async def test_approved_request_orders_data_sets(self, container, notifier):
        engine = container.engine
        instance_id = await engine.start_instance(APPROVAL_ORCHESTRATION, {"numDataFiles": 2})

        request = await _approval_request(notifier, instance_id)
        assert request.attachments == ["file-1.json", "file-2.json"]
        assert request.approved_url.endswith("?result=Approved")
        assert request.rejected_url.endswith("?result=Rejected")
        assert engine.get_status(instance_id).custom_status == "AwaitingApproval"

        await container.gateway.deliver(_token_from(request.approved_url), "Approved")
        instance = await engine.wait_for_completion(instance_id, timeout=10)

        assert instance.status == OrchestrationStatus.COMPLETED
        assert instance.output == "Approved"
        assert instance.custom_status == "Approved"
        confirmation = notifier.last("approval_confirmed", instance_id)
        assert confirmation.ordered_files == ["file-1.json", "file-2.json"]
        for name in ("file-1.json", "file-2.json"):
            assert container.datasets.exists(instance_id, DataSetStore.ORDERED, name)

    @pytest.mark.asyncio
    async def test_ordered_data_set_keeps_colours_and_shape(self, container, notifier):
        instance_id = await container.engine.start_instance(APPROVAL_ORCHESTRATION, {"numDataFiles": 1})
        request = await _approval_request(notifier, instance_id)
        await container.gateway.deliver(_token_from(request.approved_url), "Approved")
        await container.engine.wait_for_completion(instance_id, timeout=10)

        unordered = container.datasets.read(instance_id, DataSetStore.UNORDERED, "file-1.json")
        ordered = container.datasets.read(instance_id, DataSetStore.ORDERED, "file-1.json")

        assert len(ordered) == len(unordered) == 5
        assert all(len(row) == 4 for row in ordered)
        flat = [cell for row in ordered for cell in row]
        assert sorted(flat) == sorted(cell for row in unordered for cell in row)
        assert flat == sorted(flat, key=PALETTE.index)

    @pytest.mark.asyncio
    async def test_rejected_request_sends_rejection(self, container, notifier):
        engine = container.engine
        instance_id = await engine.start_instance(APPROVAL_ORCHESTRATION)

        request = await _approval_request(notifier, instance_id)
        await container.gateway.deliver(_token_from(request.rejected_url), "Rejected")
        instance = await engine.wait_for_completion(instance_id, timeout=10)

        assert instance.output == "Rejected"
        rejection = notifier.last("rejection_confirmed", instance_id)
        assert "Rejected" in rejection.reason
        assert notifier.last("approval_confirmed", instance_id) is None
        assert not container.datasets.exists(instance_id, DataSetStore.ORDERED, "file-1.json")

    @pytest.mark.asyncio
    async def test_unanswered_request_times_out(self, container, notifier):
        engine = container.engine
        instance_id = await engine.start_instance(APPROVAL_ORCHESTRATION, {"timeoutSeconds": 0.3})

        request = await _approval_request(notifier, instance_id)
        instance = await engine.wait_for_completion(instance_id, timeout=10)

        assert instance.output == "Rejected"
        assert notifier.last("rejection_confirmed", instance_id).reason == "approval timed out"
        token = _token_from(request.approved_url)
        await eventually(lambda: container.correlation_store.load(token) is None)

    @pytest.mark.asyncio
    async def test_each_run_increments_the_request_counter(self, container, notifier):
        for _ in range(2):
            instance_id = await container.engine.start_instance(APPROVAL_ORCHESTRATION, {"numDataFiles": 1})
            await _approval_request(notifier, instance_id)

        await eventually(
            lambda: container.entity_store.read_state(COUNTER_ID).state == {"requestNumber": 2}
        )


class FailingRequestNotifier(LoggingNotifier):
    """Refuses approval requests but delivers confirmations."""

    async def send(self, notification):
        if notification.kind == "approval_request":
            raise NotificationError("mailbox_full")
        await super().send(notification)


class TestNotificationFailures:
    """A request that cannot be sent ends in a rejection."""

    @pytest.fixture
    def notifier(self):
        return FailingRequestNotifier()

    @pytest.mark.asyncio
    async def test_failed_request_is_rejected(self, container, notifier):
        instance_id = await container.engine.start_instance(APPROVAL_ORCHESTRATION, {"numDataFiles": 1})
        instance = await container.engine.wait_for_completion(instance_id, timeout=10)

        assert instance.status == OrchestrationStatus.COMPLETED
        assert instance.output == "Rejected"
        rejection = notifier.last("rejection_confirmed", instance_id)
        assert rejection.reason.startswith("approval request failed")


class TestDisabledNotifications:
    """Tokens are still issued when nothing is sent."""

    @pytest.fixture
    def settings(self, settings):
        settings.notifications = replace(settings.notifications, enabled=False)
        return settings

    @pytest.mark.asyncio
    async def test_token_is_registered_without_notification(self, container, notifier):
        instance_id = await container.engine.start_instance(APPROVAL_ORCHESTRATION, {"numDataFiles": 1})

        tokens = await eventually(
            lambda: container.correlation_store.tokens_for_instance(instance_id)
        )
        assert notifier.sent == []

        await container.gateway.deliver(tokens[0].token, "Approved")
        instance = await container.engine.wait_for_completion(instance_id, timeout=10)
        assert instance.output == "Approved"
