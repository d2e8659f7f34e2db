"""
Tests for the progress notifier.
"""

import asyncio

import pytest

from insight_pipeline.errors import AuthorizationError
from insight_pipeline.notifier import (
    ProgressEvent,
    ProgressEventType,
    ProgressNotifier,
    TokenAuthorizer,
)

from conftest import SUBSCRIBER_TOKEN


def event(status: str, percentage: float = 0, kind=ProgressEventType.STATUS_CHANGED, **kwargs) -> ProgressEvent:
    return ProgressEvent(
        type=kind,
        job_id="job_1",
        status=status,
        progress={"percentage": percentage, "current_step": 0, "total_steps": 6},
        **kwargs,
    )


class TestAuthorization:
    """Tests for TokenAuthorizer and subscribe() checks."""

    def test_token_match(self):
        authorizer = TokenAuthorizer({"secret"})

        assert authorizer.authorize("secret", "job_1") is True
        assert authorizer.authorize("guess", "job_1") is False
        assert authorizer.authorize(None, "job_1") is False

    def test_open_mode_requires_identity(self):
        authorizer = TokenAuthorizer()

        assert authorizer.authorize("dashboard", "job_1") is True
        assert authorizer.authorize("", "job_1") is False

    def test_unauthorized_subscribe(self, notifier):
        with pytest.raises(AuthorizationError):
            notifier.subscribe("job_1", "intruder")

        assert notifier.subscriber_count("job_1") == 0


class TestDelivery:
    """Tests for publish/subscribe ordering and closing."""

    @pytest.mark.asyncio
    async def test_events_in_publish_order(self, notifier):
        subscription = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)

        notifier.publish("job_1", event("running"))
        for percentage in (10, 25, 50):
            notifier.publish("job_1", event("running", percentage, ProgressEventType.PROGRESS_UPDATED))
        notifier.publish("job_1", event("completed", 100))

        received = [e async for e in subscription]

        assert [e.progress["percentage"] for e in received] == [0, 10, 25, 50, 100]
        assert received[-1].status == "completed"

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_event(self, notifier):
        first = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)
        second = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)

        notifier.publish("job_1", event("running"))
        notifier.publish("job_1", event("failed", error_code="budget_exceeded"))

        assert [e.status for e in [e async for e in first]] == ["running", "failed"]
        assert [e.status for e in [e async for e in second]] == ["running", "failed"]

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_latest_then_closes(self, notifier):
        notifier.publish("job_1", event("running"))
        notifier.publish("job_1", event("cancelled"))

        received = [e async for e in notifier.subscribe("job_1", SUBSCRIBER_TOKEN)]

        assert [e.status for e in received] == ["cancelled"]

    @pytest.mark.asyncio
    async def test_mid_stream_subscriber_starts_at_latest(self, notifier):
        notifier.publish("job_1", event("queued"))
        notifier.publish("job_1", event("running", 25, ProgressEventType.PROGRESS_UPDATED))
        subscription = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)
        notifier.publish("job_1", event("completed", 100))

        received = [e async for e in subscription]

        assert [e.progress["percentage"] for e in received] == [25, 100]

    @pytest.mark.asyncio
    async def test_other_jobs_are_not_delivered(self, notifier):
        subscription = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)

        notifier.publish("job_2", ProgressEvent(
            type=ProgressEventType.STATUS_CHANGED, job_id="job_2", status="running", progress={},
        ))
        subscription.close()

        assert [e async for e in subscription] == []
        assert notifier.subscriber_count("job_1") == 0

    @pytest.mark.asyncio
    async def test_waiting_subscriber_wakes(self, notifier):
        subscription = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)

        async def consume():
            return [e.status async for e in subscription]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        notifier.publish("job_1", event("running"))
        notifier.publish("job_1", event("completed"))

        assert await asyncio.wait_for(task, timeout=1) == ["running", "completed"]

    @pytest.mark.asyncio
    async def test_close_ends_all_streams(self, notifier):
        subscription = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)

        notifier.close()

        assert [e async for e in subscription] == []
        assert notifier.get_stats()["subscribers"] == 0

    def test_remember_does_not_override_published(self, notifier):
        notifier.publish("job_1", event("running"))
        notifier.remember("job_1", event("queued"))

        subscription = notifier.subscribe("job_1", SUBSCRIBER_TOKEN)

        assert subscription._queue.get_nowait().status == "running"

    def test_event_to_dict(self):
        data = event("failed", 40, error_code="provider_unavailable").to_dict()

        assert data["jobId"] == "job_1"
        assert data["type"] == "status_changed"
        assert data["errorCode"] == "provider_unavailable"


class TestRetention:
    """Tests for how long latest events are kept."""

    def test_finished_jobs_are_bounded(self):
        notifier = ProgressNotifier(TokenAuthorizer({SUBSCRIBER_TOKEN}), max_finished=10)

        for i in range(1000):
            job_id = f"job_{i}"
            notifier.publish(job_id, ProgressEvent(
                type=ProgressEventType.STATUS_CHANGED, job_id=job_id, status="running", progress={},
            ))
            notifier.publish(job_id, ProgressEvent(
                type=ProgressEventType.STATUS_CHANGED, job_id=job_id, status="completed", progress={},
            ))

        stats = notifier.get_stats()
        assert stats["active_jobs"] == 0
        assert stats["finished_jobs"] == 10

    @pytest.mark.asyncio
    async def test_recent_final_event_still_replayed(self):
        notifier = ProgressNotifier(TokenAuthorizer({SUBSCRIBER_TOKEN}), max_finished=1)
        notifier.publish("job_1", event("failed", error_code="budget_exceeded"))

        received = [e async for e in notifier.subscribe("job_1", SUBSCRIBER_TOKEN)]

        assert [e.error_code for e in received] == ["budget_exceeded"]

    @pytest.mark.asyncio
    async def test_evicted_job_can_be_reseeded(self):
        notifier = ProgressNotifier(TokenAuthorizer({SUBSCRIBER_TOKEN}), max_finished=1)
        notifier.publish("job_1", event("completed", 100))
        notifier.publish("job_2", ProgressEvent(
            type=ProgressEventType.STATUS_CHANGED, job_id="job_2", status="cancelled", progress={},
        ))

        notifier.remember("job_1", event("completed", 100))
        received = [e async for e in notifier.subscribe("job_1", SUBSCRIBER_TOKEN)]

        assert [e.status for e in received] == ["completed"]
        assert notifier.get_stats()["finished_jobs"] == 1
