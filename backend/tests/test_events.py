import asyncio
import json
import unittest

from app.services.generation.events import KEEPALIVE_CHUNK, EventHub, HubEvent


def drain(sub) -> list[HubEvent]:
    out = []
    while not sub.queue.empty():
        out.append(sub.queue.get_nowait())
    return out


class TestEventHub(unittest.IsolatedAsyncioTestCase):
    async def test_replay_merges_history_with_buffer(self):
        hub = EventHub()
        hub.publish_line("j", {"text": "b", "index": 1})
        hub.publish_line("j", {"text": "c", "index": 2})
        hub.publish_status("j", "generating")

        sub = hub.subscribe("j", history=[{"text": "a", "index": 0}, {"text": "b", "index": 1}])
        events = drain(sub)
        self.assertEqual([e.event for e in events], ["scan_line", "scan_line", "scan_line", "status"])
        self.assertEqual([e.data["text"] for e in events[:3]], ["a", "b", "c"])
        self.assertEqual(events[3].data, {"status": "generating"})
        self.assertEqual(hub.subscriber_count("j"), 1)

    async def test_live_events_then_done(self):
        hub = EventHub(keepalive_s=1)
        sub = hub.subscribe("j", status="queued")
        hub.publish_status("j", "prompting")
        hub.publish_line("j", "thinking")
        hub.publish_done("j", "done")

        seen = [ev async for ev in sub.events()]
        self.assertEqual([e.event for e in seen], ["status", "status", "scan_line", "done"])
        self.assertEqual(seen[2].data, {"text": "thinking", "index": 0})
        self.assertFalse(hub.has_channel("j"))

    async def test_terminal_job_gets_done_immediately(self):
        hub = EventHub()
        sub = hub.subscribe("j", history=[{"text": "old", "index": 0}], status="error")
        events = drain(sub)
        self.assertEqual([e.event for e in events], ["scan_line", "status", "done"])
        self.assertEqual(hub.subscriber_count("j"), 0)
        self.assertFalse(hub.has_channel("j"))

    async def test_failing_subscriber_is_dropped(self):
        hub = EventHub(max_queue=1)
        slow = hub.subscribe("j", status="generating")
        fast = hub.subscribe("j", status="generating")
        with self.assertLogs("app.services.generation.events", level="WARNING"):
            for i in range(70):
                hub.publish_line("j", f"line {i}")
                drain(fast)
        self.assertTrue(slow.dropped)
        self.assertEqual(hub.subscriber_count("j"), 1)

        # a dropped subscriber drains what it has and then stops
        seen = [ev async for ev in slow.events(keepalive_s=0.01)]
        self.assertTrue(seen)
        self.assertNotIn(None, seen)

    async def test_channel_removed_when_last_subscriber_leaves(self):
        hub = EventHub()
        sub = hub.subscribe("j", status="generating")
        self.assertTrue(hub.has_channel("j"))
        sub.close()
        self.assertFalse(hub.has_channel("j"))

    async def test_unobserved_job_dropped_on_done(self):
        hub = EventHub()
        hub.publish_line("j", "hello")
        self.assertTrue(hub.has_channel("j"))
        hub.publish_done("j", "done")
        self.assertFalse(hub.has_channel("j"))

    async def test_explicit_line_index_advances_cursor(self):
        hub = EventHub()
        self.assertEqual(hub.publish_line("j", {"text": "x", "index": 5})["index"], 5)
        self.assertEqual(hub.publish_line("j", "y")["index"], 6)
        self.assertEqual(hub.publish_line("j", {"text": "z", "index": 2})["index"], 2)
        self.assertEqual(hub.publish_line("j", "w")["index"], 7)

    async def test_keepalive_when_idle(self):
        hub = EventHub()
        sub = hub.subscribe("j", status="generating")
        chunks = sub.sse(keepalive_s=0.01)
        self.assertEqual(await chunks.__anext__(), "event: status\ndata: {\"status\": \"generating\"}\n\n")
        self.assertEqual(await chunks.__anext__(), KEEPALIVE_CHUNK)
        await chunks.aclose()
        await asyncio.sleep(0)
        self.assertFalse(hub.has_channel("j"))


class TestHubEvent(unittest.TestCase):
    def test_sse_framing(self):
        chunk = HubEvent("scan_line", {"text": "hi", "index": 0}).to_sse()
        self.assertTrue(chunk.startswith("event: scan_line\ndata: "))
        self.assertTrue(chunk.endswith("\n\n"))
        self.assertEqual(json.loads(chunk.split("data: ", 1)[1]), {"text": "hi", "index": 0})


if __name__ == "__main__":
    unittest.main()
