import json
import unittest

from app.services.llm.client import (
    LabeledImage,
    LLMCompletion,
    LLMDisabledError,
    OpenAICompatibleLLM,
    PromptSynthesizer,
    build_labeled_content,
)


class FakeLLM:
    def __init__(self, raw: str) -> None:
        self.raw = raw
        self.calls: list[dict] = []

    async def complete(self, *, system, labeled_images, payload, purpose=""):
        self.calls.append({"system": system, "images": list(labeled_images), "payload": payload, "purpose": purpose})
        parsed = OpenAICompatibleLLM._extract_json(None, self.raw)
        return LLMCompletion(raw=self.raw, parsed=parsed, request={"model": "fake"})


class TestLabeledContent(unittest.TestCase):
    def test_roles_precede_images_and_bad_urls_skipped(self):
        content = build_labeled_content(
            " {\"a\": 1} ",
            [LabeledImage("START_IMAGE", "https://cdn.example/s.png"), LabeledImage("LOGO", "data:image/png;base64,xx")],
        )
        self.assertEqual(content[0], {"type": "text", "text": "{\"a\": 1}"})
        self.assertEqual(content[1], {"type": "text", "text": "IMAGE ROLE: START_IMAGE"})
        self.assertEqual(content[2], {"type": "image_url", "image_url": {"url": "https://cdn.example/s.png"}})
        self.assertEqual(len(content), 3)


class TestExtractJson(unittest.TestCase):
    def test_plain_and_wrapped_json(self):
        extract = OpenAICompatibleLLM._extract_json
        self.assertEqual(extract(None, '{"clean_prompt": "x"}'), {"clean_prompt": "x"})
        self.assertEqual(extract(None, 'sure! ```json\n{"clean_prompt": "y"}\n```'), {"clean_prompt": "y"})
        self.assertIsNone(extract(None, "no json here"))
        self.assertIsNone(extract(None, ""))


class TestPromptSynthesizer(unittest.IsolatedAsyncioTestCase):
    async def test_still_create_reads_clean_prompt(self):
        llm = FakeLLM(json.dumps({"clean_prompt": "  tea can on marble  "}))
        synth = PromptSynthesizer(llm)
        images = [LabeledImage(f"IMG {i}", f"https://cdn.example/{i}.png") for i in range(12)]
        out = await synth.still_create({"user_brief": "tea"}, images)

        self.assertEqual(out.prompt, "tea can on marble")
        self.assertTrue(out.parsed_ok)
        self.assertEqual(out.system, synth.systems["still_create"])
        self.assertEqual(len(llm.calls[0]["images"]), 10)
        self.assertEqual(llm.calls[0]["purpose"], "still_create")

    async def test_motion_prompts_accept_generic_key_and_fewer_images(self):
        llm = FakeLLM('{"prompt": "slow orbit"}')
        images = [LabeledImage("X", f"https://cdn.example/{i}.png") for i in range(8)]
        out = await PromptSynthesizer(llm).motion_animate({}, images)
        self.assertEqual(out.prompt, "slow orbit")
        self.assertEqual(len(llm.calls[0]["images"]), 6)

    async def test_unparseable_reply_gives_empty_prompt(self):
        out = await PromptSynthesizer(FakeLLM("I cannot help")).still_tweak({}, [])
        self.assertEqual(out.prompt, "")
        self.assertFalse(out.parsed_ok)
        self.assertEqual(out.raw, "I cannot help")

    async def test_missing_llm_raises(self):
        with self.assertRaises(LLMDisabledError):
            await PromptSynthesizer(None).motion_tweak({}, [])


if __name__ == "__main__":
    unittest.main()
