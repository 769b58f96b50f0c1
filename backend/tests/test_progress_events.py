import asyncio

from models.model_models import DownloadProgressEvent
from services.progress_events import ProgressChannel


def make_event(model_id="m", event_type="progress", percentage=0.0):
    return DownloadProgressEvent(type=event_type, model_id=model_id, backend="llama", percentage=percentage)


def test_callbacks_receive_events_until_unsubscribed():
    channel = ProgressChannel()
    received = []
    unsubscribe = channel.subscribe(received.append)

    channel.publish(make_event(percentage=10))
    unsubscribe()
    channel.publish(make_event(percentage=20))

    assert [e.percentage for e in received] == [10]
    assert channel.subscriber_count == 0


def test_failing_callback_does_not_block_others():
    channel = ProgressChannel()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    channel.subscribe(broken)
    channel.subscribe(received.append)
    channel.publish(make_event())

    assert len(received) == 1


def test_latest_event_per_model():
    channel = ProgressChannel()
    channel.publish(make_event("a", percentage=10))
    channel.publish(make_event("a", "complete", 100))
    channel.publish(make_event("b", percentage=5))

    assert channel.latest("a").type == "complete"
    assert set(channel.latest()) == {"a", "b"}
    assert channel.latest("missing") is None


def test_slow_queue_drops_oldest():
    async def scenario():
        channel = ProgressChannel(queue_size=2)
        queue = channel.open_queue()
        for pct in (1, 2, 3):
            channel.publish(make_event(percentage=pct))
        drained = [queue.get_nowait().percentage for _ in range(queue.qsize())]
        channel.close_queue(queue)
        return drained, channel.subscriber_count

    drained, remaining = asyncio.run(scenario())

    assert drained == [2, 3]
    assert remaining == 0


def test_event_payload_uses_model_key():
    payload = make_event("qwen", "complete", 100).to_dict()
    assert payload["model"] == "qwen"
    assert payload["type"] == "complete"
