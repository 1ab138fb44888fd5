import unittest

from fakes import FakeClock, FakePredictionClient

from app.services.generation.provider import (
    PollConfig,
    ProviderError,
    ReplicateError,
    pick_first_url,
    run_prediction,
    run_prediction_dropping_field,
)

FAST = PollConfig(timeout_ms=30000, poll_ms=100, call_timeout_ms=3000)


class TestRunPrediction(unittest.IsolatedAsyncioTestCase):
    async def run_with(self, client, config=FAST, **kwargs):
        self.clock = FakeClock()
        return await run_prediction(
            client,
            version="owner/model",
            input=kwargs.pop("input", {"prompt": "x"}),
            config=config,
            sleep=self.clock.sleep,
            clock=self.clock,
        )

    async def test_polls_until_succeeded(self):
        client = FakePredictionClient(
            [
                {"id": "pred-1", "status": "processing"},
                {"id": "pred-1", "status": "succeeded", "output": ["https://cdn.example/out.png"]},
            ]
        )
        result = await self.run_with(client)
        self.assertEqual(result.prediction_id, "pred-1")
        self.assertEqual(result.status, "succeeded")
        self.assertFalse(result.timed_out)
        self.assertEqual(pick_first_url(result.output), "https://cdn.example/out.png")
        self.assertEqual(result.input, {"prompt": "x"})
        self.assertIn("duration_ms", result.timing)

    async def test_poll_interval_has_a_floor(self):
        client = FakePredictionClient([{"id": "pred-1", "status": "succeeded", "output": "https://a.example/x"}])
        await self.run_with(client)
        self.assertTrue(self.clock.sleeps)
        self.assertTrue(all(s >= 0.8 for s in self.clock.sleeps))

    async def test_final_fetch_always_runs(self):
        client = FakePredictionClient(
            created={"id": "pred-1", "status": "succeeded", "output": "https://a.example/x"}
        )
        result = await self.run_with(client)
        self.assertEqual(client.gets, 1)
        self.assertEqual(result.status, "succeeded")

    async def test_failed_prediction_raises(self):
        client = FakePredictionClient([{"id": "pred-1", "status": "failed", "error": "NSFW content", "logs": "x" * 3000}])
        with self.assertRaises(ProviderError) as ctx:
            await self.run_with(client)
        err = ctx.exception
        self.assertEqual(err.code, "REPLICATE_FAILED")
        self.assertEqual(err.provider["prediction_id"], "pred-1")
        self.assertEqual(err.provider["name"], "replicate")
        self.assertEqual(len(err.provider["logs"]), 2000)

    async def test_canceled_prediction_raises(self):
        client = FakePredictionClient([{"id": "pred-1", "status": "canceled"}])
        with self.assertRaises(ProviderError) as ctx:
            await self.run_with(client)
        self.assertEqual(ctx.exception.code, "REPLICATE_CANCELED")

    async def test_transient_poll_errors_are_ignored(self):
        client = FakePredictionClient(
            [
                ReplicateError("Replicate error 502: bad gateway", status_code=502),
                {"id": "pred-1", "status": "succeeded", "output": {"video": "https://cdn.example/v.mp4"}},
            ]
        )
        result = await self.run_with(client)
        self.assertEqual(pick_first_url(result.output), "https://cdn.example/v.mp4")

    async def test_deadline_returns_timed_out_and_cancels(self):
        client = FakePredictionClient()
        config = PollConfig(timeout_ms=1000, poll_ms=800, call_timeout_ms=3000, cancel_on_timeout=True)
        with self.assertLogs("app.services.generation.provider", level="WARNING"):
            result = await self.run_with(client, config=config)
        self.assertTrue(result.timed_out)
        self.assertGreaterEqual(self.clock.now, 30.0)
        self.assertEqual(client.cancelled, ["pred-1"])

    async def test_deadline_without_cancel(self):
        client = FakePredictionClient()
        result = await self.run_with(client, config=PollConfig(timeout_ms=30000, poll_ms=5000))
        self.assertTrue(result.timed_out)
        self.assertEqual(client.cancelled, [])

    async def test_missing_version_rejected(self):
        with self.assertRaises(ReplicateError):
            await run_prediction(FakePredictionClient(), version="", input={})


class TestDropFieldRetry(unittest.IsolatedAsyncioTestCase):
    async def test_retries_without_rejected_field(self):
        clock = FakeClock()
        client = FakePredictionClient(
            [{"id": "pred-1", "status": "succeeded", "output": "https://cdn.example/v.mp4"}],
            create_errors=[ReplicateError("Replicate error 422: input.generate_audio: unexpected property")],
        )
        result = await run_prediction_dropping_field(
            client,
            version="kwaivgi/kling",
            input={"prompt": "spin", "generate_audio": True},
            optional_field="generate_audio",
            config=FAST,
            sleep=clock.sleep,
            clock=clock,
        )
        self.assertEqual(len(client.created_inputs), 2)
        self.assertNotIn("generate_audio", client.created_inputs[1])
        self.assertNotIn("generate_audio", result.input)

    async def test_unrelated_errors_propagate(self):
        client = FakePredictionClient(create_errors=[ReplicateError("Replicate error 401: unauthorized")])
        with self.assertRaises(ReplicateError):
            await run_prediction_dropping_field(
                client,
                version="kwaivgi/kling",
                input={"prompt": "spin", "generate_audio": True},
                optional_field="generate_audio",
                config=FAST,
            )
        self.assertEqual(len(client.created_inputs), 1)


class TestPickFirstUrl(unittest.TestCase):
    def test_nested_payloads(self):
        self.assertEqual(pick_first_url({"data": [{"meta": 1}, {"url": "https://a.example/1.png"}]}), "https://a.example/1.png")
        self.assertEqual(pick_first_url(["not a url", " https://a.example/2.png "]), "https://a.example/2.png")
        self.assertEqual(pick_first_url({"x": {"y": "http://a.example/3.png"}}), "http://a.example/3.png")

    def test_nothing_found(self):
        self.assertEqual(pick_first_url(None), "")
        self.assertEqual(pick_first_url({"output": "ftp://nope"}), "")


if __name__ == "__main__":
    unittest.main()
