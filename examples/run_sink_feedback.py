"""
Demo: Backpressure Feedback from a SinkTask

Feeds records into a SinkTask whose "cluster" is an in-process
httpx.MockTransport answering slowly, so the batch buffer fills, put()
blocks, and feedback events are published as it drains.

No Elasticsearch needed.
"""

import asyncio
import json

import httpx
from loguru import logger

from es_sink import SinkTask, SourceRecord
from es_sink.coordinator import BackpressureLevel, FeedbackEvent, feedback_bus


async def slow_cluster(request: httpx.Request) -> httpx.Response:
    if request.url.path != "/_bulk":
        return httpx.Response(200, json={"acknowledged": True})
    await asyncio.sleep(0.2)  # Simulate a busy cluster
    lines = [json.loads(ln) for ln in request.content.splitlines() if ln]
    items = [{op: {**meta, "status": 201}} for d in lines[::2] for op, meta in d.items()]
    return httpx.Response(200, json={"took": 200, "errors": False, "items": items})


async def main():
    logger.info("🚀 Sink Backpressure Feedback Demo")
    logger.info("=" * 70)

    events = []

    async def feedback_observer(event: FeedbackEvent):
        events.append(event)
        level_emoji = {
            BackpressureLevel.OK: "✅",
            BackpressureLevel.SOFT: "⚠️ ",
            BackpressureLevel.HARD: "🔴",
        }
        logger.info(
            f"{level_emoji[event.level]} Feedback: {event.level.value.upper()} - "
            f"Buffered: {event.buffered_records}/{event.capacity} ({event.utilization:.1%}) - "
            f"Task: {event.task_id}"
        )

    feedback_bus().subscribe(feedback_observer)

    task = SinkTask(transport=httpx.MockTransport(slow_cluster))
    await task.start(
        {
            "connection.url": "http://demo:9200",
            "ignore.schema": "true",
            "max.buffered.records": "100",
            "batch.size": "20",
            "max.in.flight.requests": "2",
            "task.id": "demo",
        }
    )
    logger.info("📊 Task started (max.buffered.records=100, batch.size=20, in-flight=2)")

    records = [
        SourceRecord("demo", 0, i, key=f"k{i}", value=json.dumps({"n": i}))
        for i in range(300)
    ]
    await task.put(records)
    logger.info("📥 All records accepted")

    offsets = await task.pre_commit()
    logger.info(f"✅ Commitable offsets: { {str(tp): o for tp, o in offsets.items()} }")
    await task.stop()

    logger.info("=" * 70)
    logger.info(f"📈 {len(events)} feedback events")
    for level in BackpressureLevel:
        logger.info(f"   {level.value}: {sum(1 for e in events if e.level is level)}")

    feedback_bus().unsubscribe(feedback_observer)


if __name__ == "__main__":
    asyncio.run(main())
