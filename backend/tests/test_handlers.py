import unittest

from fakes import make_session_factory

from app.core.errors import InsufficientCreditsError, NotFoundError, ValidationError
from app.models.customer import Customer
from app.models.generation import Generation
from app.services.credits_engine import adjust_credits
from app.services.generation.handlers import create_generation, fetch_generation, tweak_generation
from app.services.generation.store import GenerationStore
from app.services.generation.vars import GenerationVars

PASS_ID = "pass:user:u1"


class TestGenerationHandlers(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        self.launched: list[str] = []

    def tearDown(self):
        self.db.close()

    def create(self, mode="still", body=None, headers=None):
        body = body if body is not None else {"user_id": "u1", "inputs": {"brief": "tea"}}
        return create_generation(self.db, mode=mode, body=body, headers=headers, launch=self.launched.append)

    def test_insufficient_credits_rejects_before_queueing(self):
        with self.assertRaises(InsufficientCreditsError) as ctx:
            self.create()
        self.assertEqual(ctx.exception.status_code, 402)
        self.assertEqual(ctx.exception.needed, 1)
        self.assertEqual(self.db.query(Generation).count(), 0)
        self.assertEqual(self.launched, [])

    def test_create_queues_and_launches(self):
        adjust_credits(self.db, PASS_ID, 3)
        out = self.create()
        gid = out["generation_id"]
        self.assertEqual(out["status"], "queued")
        self.assertEqual(out["pass_id"], PASS_ID)
        self.assertEqual(out["sse_url"], f"/mma/stream/{gid}")
        self.assertEqual(self.launched, [gid])

        vars = GenerationStore(self.db).load_vars(gid)
        self.assertEqual(vars.meta.flow, "still_create")
        self.assertEqual(vars.meta.platform, "web")
        self.assertEqual(vars.meta.title, "Image session")
        self.assertTrue(vars.meta.session_id)
        # credits move only once the pipeline runs
        self.assertEqual(self.db.query(Generation).one().status, "queued")

    def test_header_pass_id_is_used(self):
        adjust_credits(self.db, "pass:shopify:9", 3)
        out = self.create(body={"inputs": {}}, headers={"X-Mina-Pass-Id": "pass:shopify:9"})
        self.assertEqual(out["pass_id"], "pass:shopify:9")

    def test_niche_lane_needs_two_credits(self):
        adjust_credits(self.db, PASS_ID, 1)
        with self.assertRaises(InsufficientCreditsError) as ctx:
            self.create(body={"user_id": "u1", "inputs": {"still_lane": "niche"}})
        self.assertTrue(ctx.exception.details["canSwitchToMain"])

    def test_tweak_of_unknown_parent(self):
        with self.assertRaises(NotFoundError) as ctx:
            tweak_generation(self.db, mode="still", parent_id="nope", body={"feedback": "x"}, launch=self.launched.append)
        self.assertEqual(ctx.exception.code, "PARENT_GENERATION_NOT_FOUND")

    def test_tweak_requires_feedback(self):
        adjust_credits(self.db, PASS_ID, 3)
        parent = self.create()["generation_id"]
        with self.assertRaises(ValidationError) as ctx:
            tweak_generation(self.db, mode="still", parent_id=parent, body={"feedback": "  "}, launch=self.launched.append)
        self.assertEqual(ctx.exception.code, "MISSING_FEEDBACK")

    def test_video_tweak_inherits_parent_inputs(self):
        adjust_credits(self.db, PASS_ID, 20)
        parent = self.create(
            mode="video",
            body={
                "user_id": "u1",
                "session_id": "s-1",
                "inputs": {"duration": 10, "suggest_only": True, "motion_user_brief": "orbit"},
                "assets": {"start_image_url": "https://cdn.example/start.png"},
            },
        )["generation_id"]

        out = tweak_generation(
            self.db,
            mode="video",
            parent_id=parent,
            body={"inputs": {"feedback": "slower"}},
            launch=self.launched.append,
        )
        vars = GenerationStore(self.db).load_vars(out["generation_id"])
        self.assertEqual(vars.meta.flow, "video_tweak")
        self.assertEqual(vars.meta.parent_generation_id, parent)
        self.assertEqual(vars.meta.session_id, "s-1")
        self.assertEqual(vars.meta.title, "Video session")
        self.assertEqual(vars.inputs.motion_user_brief, "orbit")
        self.assertEqual(vars.inputs.duration, 10)
        self.assertFalse(vars.inputs.suggest_only)
        self.assertEqual(vars.assets.start_image_url, "https://cdn.example/start.png")
        self.assertEqual(vars.feedback.motion_feedback, "slower")

    def test_video_tweak_camel_case_override_beats_parent(self):
        adjust_credits(self.db, PASS_ID, 30)
        parent = self.create(
            mode="video",
            body={"user_id": "u1", "inputs": {"duration": 5}, "assets": {"start_image_url": "https://cdn.example/s.png"}},
        )["generation_id"]

        out = tweak_generation(
            self.db,
            mode="video",
            parent_id=parent,
            body={"feedback": "longer", "inputs": {"durationSeconds": 10}},
            launch=self.launched.append,
        )
        vars = GenerationStore(self.db).load_vars(out["generation_id"])
        self.assertEqual(vars.inputs.duration, 10)
        self.assertNotIn("durationSeconds", vars.inputs.as_dict())

    def test_video_tweak_camel_case_override_is_priced(self):
        adjust_credits(self.db, PASS_ID, 5)
        parent = self.create(
            mode="video",
            body={"user_id": "u1", "inputs": {"duration": 5}, "assets": {"start_image_url": "https://cdn.example/s.png"}},
        )["generation_id"]
        with self.assertRaises(InsufficientCreditsError) as ctx:
            tweak_generation(
                self.db,
                mode="video",
                parent_id=parent,
                body={"feedback": "longer", "inputs": {"durationSeconds": 10}},
                launch=self.launched.append,
            )
        self.assertEqual(ctx.exception.needed, 10)

    def test_wrongly_typed_inputs_are_rejected_before_customer_row(self):
        for inputs in ({"resolution": 720}, {"brief": 123}, {"duration": "ten"}):
            with self.subTest(inputs=inputs):
                with self.assertRaises(ValidationError) as ctx:
                    self.create(mode="video", body={"user_id": "new-user", "inputs": inputs})
                self.assertEqual(ctx.exception.code, "INPUTS_INVALID")
                self.assertEqual(ctx.exception.status_code, 400)
                self.assertTrue(ctx.exception.context["fields"][0]["field"].startswith("inputs."))
        self.assertEqual(self.db.query(Customer).filter(Customer.pass_id == "pass:user:new-user").count(), 0)
        self.assertEqual(self.launched, [])

    def test_fetch_generation_shape(self):
        adjust_credits(self.db, PASS_ID, 3)
        gid = self.create()["generation_id"]
        out = fetch_generation(self.db, gid)
        self.assertEqual(out["generation_id"], gid)
        self.assertEqual(out["state"], "queued")
        self.assertEqual(out["still_engine"], "seedream")
        self.assertEqual(set(out["outputs"]), {"seedream_image_url", "nanobanana_image_url", "kling_video_url"})
        self.assertIsNone(out["error"])
        GenerationVars.model_validate(out["mma_vars"])

        with self.assertRaises(NotFoundError):
            fetch_generation(self.db, "missing")


if __name__ == "__main__":
    unittest.main()
