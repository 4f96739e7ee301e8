import asyncio
import dataclasses
import json
from types import SimpleNamespace

import httpx
import numpy as np
import pytest

from bubblescan.adapters import (
    GeminiAdapter,
    InferenceChain,
    build_chain,
    build_prompt,
    groq_adapter,
    openrouter_adapter,
    parse_answer_payload,
)
from bubblescan.config import SETTINGS
from bubblescan.errors import BackendUnavailable, ValidationError

from conftest import ScriptedAdapter, answers_json

RASTER = np.full((200, 160), 255, dtype=np.uint8)


def test_prompt_names_questions_and_options():
    prompt = build_prompt(25, 5)
    assert "1 to 25" in prompt
    assert "A, B, C, D, E" in prompt
    assert '"MULTIPLE"' in prompt


def test_parse_plain_json():
    assert parse_answer_payload('{"1": "A", "2": "b", "3": "D"}', 3, 4) == {1: "A", 2: "B", 3: "D"}


def test_parse_fenced_json_with_chatter():
    text = 'Here you go:\n```json\n{"1": "C", "2": "MULTIPLE", "3": "EMPTY"}\n```\nDone.'
    assert parse_answer_payload(text, 3, 4) == {1: "C"}


def test_parse_drops_unknown_letters_and_out_of_range_questions():
    text = json.dumps({"1": "E", "2": "A", "7": "B", "x": "C", "3": None, "4": "NO MARK"})
    assert parse_answer_payload(text, 4, 4) == {2: "A"}


def test_parse_nested_answers_object():
    assert parse_answer_payload('{"answers": {"1": "B"}}', 2, 4) == {1: "B"}


@pytest.mark.parametrize("text", ["no json here", "[1, 2, 3]", "{not json}"])
def test_parse_rejects_non_objects(text):
    with pytest.raises(ValueError):
        parse_answer_payload(text, 5, 4)


def test_adapter_confidence_is_valid_answer_ratio():
    adapter = ScriptedAdapter("fake-ai", response='{"1": "A", "2": "MULTIPLE", "3": "C", "4": "D"}')
    result = asyncio.run(adapter.analyze(RASTER, 4, 4))

    assert result.answers == {1: "A", 3: "C", 4: "D"}
    assert result.confidence == pytest.approx(0.75)
    assert result.method == "fake-ai"


def test_adapter_wraps_transport_errors():
    adapter = ScriptedAdapter("fake-ai", error=ConnectionError("refused"))
    with pytest.raises(BackendUnavailable) as excinfo:
        asyncio.run(adapter.analyze(RASTER, 4, 4))
    assert excinfo.value.backend == "fake-ai"
    assert "refused" in excinfo.value.message


def test_adapter_unparsable_reply_is_a_backend_failure():
    adapter = ScriptedAdapter("fake-ai", response="I cannot read this image.")
    with pytest.raises(BackendUnavailable, match="unparsable"):
        asyncio.run(adapter.analyze(RASTER, 4, 4))


def test_adapter_timeout_is_a_backend_failure():
    adapter = ScriptedAdapter("slow-ai", response="{}", delay=1.0, timeout=0.05)
    with pytest.raises(BackendUnavailable, match="timed out"):
        asyncio.run(adapter.analyze(RASTER, 4, 4))


def test_adapter_limits_concurrent_calls():
    active = 0
    peak = 0

    class Tracking(ScriptedAdapter):
        async def _complete(self, prompt, image_b64):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return '{"1": "A"}'

    async def scenario():
        adapter = Tracking("tracked-ai", max_concurrency=1)
        await asyncio.gather(*(adapter.analyze(RASTER, 1, 4) for _ in range(3)))

    asyncio.run(scenario())
    assert peak == 1


def test_cancellation_propagates():
    adapter = ScriptedAdapter("slow-ai", response="{}", delay=5.0)

    async def scenario():
        task = asyncio.create_task(adapter.analyze(RASTER, 4, 4))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())


def test_chain_falls_through_to_next_tier():
    broken = ScriptedAdapter("first-ai", response='{"1": "D", "2": "D"}', error=RuntimeError("HTTP 500"))
    working = ScriptedAdapter("second-ai", response=answers_json({1: "A", 2: "B"}))
    chain = InferenceChain([broken, working])

    outcome = asyncio.run(chain.run(RASTER, 2, 4))

    assert outcome.result.method == "second-ai"
    assert outcome.result.answers == {1: "A", 2: "B"}
    assert [name for name, _ in outcome.failures] == ["first-ai"]
    assert broken.calls == 1


def test_chain_stops_at_first_success():
    first = ScriptedAdapter("first-ai", response='{"1": "A"}')
    second = ScriptedAdapter("second-ai", response='{"1": "B"}')

    outcome = asyncio.run(InferenceChain([first, second]).run(RASTER, 1, 4))

    assert outcome.result.method == "first-ai"
    assert second.calls == 0


def test_exhausted_chain_returns_no_result():
    chain = InferenceChain(
        [
            ScriptedAdapter("a-ai", error=RuntimeError("down")),
            ScriptedAdapter("b-ai", response="garbage"),
        ]
    )
    outcome = asyncio.run(chain.run(RASTER, 3, 4))

    assert outcome.result is None
    assert [name for name, _ in outcome.failures] == ["a-ai", "b-ai"]


def test_run_single_and_unknown_tier():
    chain = InferenceChain([ScriptedAdapter("only-ai", response='{"1": "C"}')])

    assert asyncio.run(chain.run_single("only-ai", RASTER, 1, 4)).answers == {1: "C"}
    with pytest.raises(ValidationError):
        chain.get("missing-ai")


def test_duplicate_tier_names_rejected():
    with pytest.raises(ValueError):
        InferenceChain([ScriptedAdapter("x-ai"), ScriptedAdapter("x-ai")])


def test_openai_compatible_adapter_request_and_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        content = '```json\n{"1": "B", "2": "EMPTY"}\n```'
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    adapter = groq_adapter("gsk-test", "vision-model", transport=httpx.MockTransport(handler))
    result = asyncio.run(adapter.analyze(RASTER, 2, 4))

    assert result.method == "groq-ai"
    assert result.answers == {1: "B"}
    assert result.confidence == pytest.approx(0.5)
    assert seen["url"] == "https://api.groq.com/openai/v1/chat/completions"
    assert seen["auth"] == "Bearer gsk-test"
    assert seen["body"]["model"] == "vision-model"
    image_part = seen["body"]["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_openai_compatible_adapter_http_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(429, text="rate limited"))
    adapter = openrouter_adapter("or-key", "vision-model", transport=transport)

    with pytest.raises(BackendUnavailable, match="HTTP 429"):
        asyncio.run(adapter.analyze(RASTER, 2, 4))


def test_openrouter_sends_attribution_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.headers)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"1": "A"}'}}]})

    adapter = openrouter_adapter("or-key", "m", site_url="https://lms.example", transport=httpx.MockTransport(handler))
    asyncio.run(adapter.analyze(RASTER, 1, 4))

    assert seen["http-referer"] == "https://lms.example"
    assert seen["x-title"] == "bubblescan"


def test_build_chain_follows_order_and_skips_missing_keys():
    settings = dataclasses.replace(
        SETTINGS,
        inference_order=("openrouter", "gemini", "groq", "mystery"),
        groq_api_key="gsk-test",
        gemini_api_key=None,
        openrouter_api_key="or-key",
    )
    assert build_chain(settings).names == ["openrouter-ai", "groq-ai"]


def test_build_chain_with_gemini():
    settings = dataclasses.replace(
        SETTINGS,
        inference_order=("gemini",),
        gemini_api_key="gm-test",
    )
    assert build_chain(settings).names == ["gemini-ai"]


class _SlowGeminiModels:
    def __init__(self, delay):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls = []

    async def generate_content(self, model, contents, config=None):
        self.calls.append(model)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return SimpleNamespace(text='{"1": "A"}')


def _fake_gemini_client(models):
    return SimpleNamespace(aio=SimpleNamespace(models=models))


def test_gemini_timeouts_do_not_exceed_concurrency_limit():
    models = _SlowGeminiModels(delay=0.5)
    adapter = GeminiAdapter(
        "gm-test", "vision-model", timeout=0.05, max_concurrency=1, client=_fake_gemini_client(models)
    )

    async def scenario():
        for _ in range(2):
            with pytest.raises(BackendUnavailable, match="timed out"):
                await adapter.analyze(RASTER, 1, 4)
        results = await asyncio.gather(
            *(adapter.analyze(RASTER, 1, 4) for _ in range(2)), return_exceptions=True
        )
        assert all(isinstance(r, BackendUnavailable) for r in results)
        assert models.active == 0

    asyncio.run(scenario())
    assert len(models.calls) == 4
    assert models.peak == 1


def test_gemini_reply_is_parsed():
    models = _SlowGeminiModels(delay=0)
    adapter = GeminiAdapter("gm-test", "vision-model", client=_fake_gemini_client(models))

    result = asyncio.run(adapter.analyze(RASTER, 2, 4))

    assert result.method == "gemini-ai"
    assert result.answers == {1: "A"}
    assert models.calls == ["vision-model"]
