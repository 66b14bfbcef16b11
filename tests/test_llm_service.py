import asyncio
import json
import tempfile
import unittest
from datetime import date
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import llm.llm_service as llm_service
from llm.prompts import report_generation
from llm.stream_client import LiteLLMStreamClient, ScriptedStreamClient, TextDelta, _chunk_token
from services.generation.errors import UpstreamModelError


class DummyResponse:
    def __init__(self, content, usage=None):
        self.choices = [SimpleNamespace(message=SimpleNamespace(content=content))]
        self.usage = usage


def _stream(*chunks, fail_with=None):
    async def _iterate():
        for chunk in chunks:
            yield chunk
        if fail_with is not None:
            raise fail_with

    return _iterate()


def _delta(text):
    return {"choices": [{"delta": {"content": text}}]}


async def _drain(iterator):
    return [item async for item in iterator]


class JsonCompletionTests(unittest.TestCase):
    def test_payload_gets_model_used(self):
        response = DummyResponse(json.dumps({"entities": []}), usage={"total_tokens": 12})
        with patch("llm.llm_service.litellm.acompletion", new=AsyncMock(return_value=response)) as mocked:
            result = asyncio.run(llm_service.json_completion("gpt-4o-mini", [{"role": "user", "content": "x"}]))

        self.assertEqual(result, {"entities": [], "model_used": "gpt-4o-mini"})
        self.assertEqual(mocked.await_args.kwargs["response_format"], {"type": "json_object"})

    def test_json_decode_error_returns_error(self):
        with patch("llm.llm_service.litellm.acompletion", new=AsyncMock(return_value=DummyResponse("not-json"))):
            result = asyncio.run(llm_service.json_completion("gpt-4o-mini", []))

        self.assertIn("error", result)
        self.assertIn("JSON decode failure", result["error"])

    def test_provider_failure_returns_error(self):
        with patch("llm.llm_service.litellm.acompletion", new=AsyncMock(side_effect=RuntimeError("quota"))):
            result = asyncio.run(llm_service.json_completion("gpt-4o-mini", []))

        self.assertIn("quota", result["error"])


class UsageAndCostTests(unittest.TestCase):
    def test_extract_usage_from_mapping_and_object(self):
        self.assertEqual(
            llm_service.extract_usage_payload({"usage": {"prompt_tokens": 3, "total_tokens": 5}}),
            {"prompt_tokens": 3, "total_tokens": 5},
        )
        usage = SimpleNamespace(prompt_tokens=1, completion_tokens=2, total_tokens=3)
        self.assertEqual(
            llm_service.extract_usage_payload(SimpleNamespace(usage=usage)),
            {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
        )
        self.assertIsNone(llm_service.extract_usage_payload({"choices": []}))

    def test_estimate_cost(self):
        self.assertIsNone(llm_service.estimate_cost("gpt-4o", None))
        with patch("llm.llm_service.litellm.cost_per_token", return_value=(0.001, 0.0025)):
            self.assertAlmostEqual(llm_service.estimate_cost("gpt-4o", {"prompt_tokens": 10}), 0.0035)
        with patch("llm.llm_service.litellm.cost_per_token", side_effect=ValueError("unknown model")):
            self.assertIsNone(llm_service.estimate_cost("in-house-model", {"prompt_tokens": 10}))


class ModelAliasTests(unittest.TestCase):
    def test_aliases_are_read_from_model_list(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "litellm.yaml"
            path.write_text(
                "model_list:\n"
                "  - model_name: report-default\n"
                "    litellm_params:\n"
                "      model: anthropic/claude-3-5-sonnet-20241022\n"
                "  - model_name: broken\n"
                "    litellm_params: {}\n",
                encoding="utf-8",
            )
            aliases = llm_service.load_model_aliases(str(path))

        self.assertEqual(aliases, {"report-default": "anthropic/claude-3-5-sonnet-20241022"})

    def test_missing_or_invalid_config_yields_nothing(self):
        self.assertEqual(llm_service.load_model_aliases(None), {})
        self.assertEqual(llm_service.load_model_aliases("/nonexistent/litellm.yaml"), {})


class ChunkTokenTests(unittest.TestCase):
    def test_mapping_chunks(self):
        self.assertEqual(_chunk_token(_delta("Hello")), "Hello")
        self.assertEqual(_chunk_token({"choices": [{"delta": {}, "text": "legacy"}]}), "legacy")
        self.assertEqual(_chunk_token({"choices": []}), "")

    def test_object_chunks(self):
        chunk = SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="World"))])
        self.assertEqual(_chunk_token(chunk), "World")
        empty = SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None), text="")])
        self.assertEqual(_chunk_token(empty), "")


class LiteLLMStreamClientTests(unittest.TestCase):
    messages = [{"role": "user", "content": "Analyze Apple"}]

    def test_streams_text_then_usage(self):
        response = _stream(_delta("Hel"), _delta("lo"), {"choices": [], "usage": {"total_tokens": 7}})
        client = LiteLLMStreamClient()
        with patch("llm.stream_client.litellm.acompletion", new=AsyncMock(return_value=response)) as mocked:
            deltas = asyncio.run(_drain(client.stream_completion(self.messages, model="gpt-4o", max_tokens=50)))

        self.assertEqual([delta.text for delta in deltas], ["Hel", "lo", ""])
        self.assertEqual(deltas[-1].usage, {"total_tokens": 7})
        self.assertTrue(all(delta.model == "gpt-4o" for delta in deltas))
        kwargs = mocked.await_args.kwargs
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["max_tokens"], 50)
        self.assertNotIn("temperature", kwargs)

    def test_fallback_model_used_when_primary_cannot_open(self):
        def open_stream(model, **_):
            if model == "gpt-4o":
                raise RuntimeError("primary down")
            return _stream(_delta("from fallback"))

        client = LiteLLMStreamClient(fallback_model="gpt-4o-mini")
        with patch("llm.stream_client.litellm.acompletion", new=AsyncMock(side_effect=open_stream)):
            deltas = asyncio.run(_drain(client.stream_completion(self.messages, model="gpt-4o")))

        self.assertEqual(deltas, [TextDelta(text="from fallback", model="gpt-4o-mini")])

    def test_open_failure_without_fallback_raises(self):
        client = LiteLLMStreamClient()
        with patch("llm.stream_client.litellm.acompletion", new=AsyncMock(side_effect=RuntimeError("down"))):
            with self.assertRaises(UpstreamModelError):
                asyncio.run(_drain(client.stream_completion(self.messages, model="gpt-4o")))

    def test_mid_stream_failure_does_not_fall_back(self):
        mocked = AsyncMock(return_value=_stream(_delta("partial"), fail_with=ConnectionError("reset")))
        client = LiteLLMStreamClient(fallback_model="gpt-4o-mini")
        received = []

        async def consume():
            async for delta in client.stream_completion(self.messages, model="gpt-4o"):
                received.append(delta.text)

        with patch("llm.stream_client.litellm.acompletion", new=mocked):
            with self.assertRaises(UpstreamModelError):
                asyncio.run(consume())

        self.assertEqual(received, ["partial"])
        self.assertEqual(mocked.await_count, 1)


class ScriptedStreamClientTests(unittest.TestCase):
    def test_default_script_is_a_sectioned_mock_report(self):
        client = ScriptedStreamClient()
        messages = report_generation.get_prompt("Outlook for Tesla")

        deltas = asyncio.run(_drain(client.stream_completion(messages, model="mock")))
        text = "".join(delta.text for delta in deltas)

        self.assertIn("Outlook for Tesla", text)
        self.assertEqual(text.count("<h2>"), 4)
        self.assertNotIn("Additional requirements", text)

    def test_fail_after_raises(self):
        client = ScriptedStreamClient(["a", "b", "c"], fail_after=1)
        with self.assertRaises(UpstreamModelError):
            asyncio.run(_drain(client.stream_completion([], model="mock")))


class ReportPromptTests(unittest.TestCase):
    def test_system_prompt_selection(self):
        self.assertIs(report_generation.select_system_prompt("RSI and MACD technical view"), report_generation.TECHNICAL_ANALYSIS)
        self.assertIs(report_generation.select_system_prompt("Competitive landscape of the industry"), report_generation.MARKET_RESEARCH)
        self.assertIs(report_generation.select_system_prompt("Apple earnings"), report_generation.FINANCIAL_ANALYSIS)

    def test_enhanced_prompt_lists_requirements(self):
        enhanced = report_generation.enhance_prompt("Apple", language="ja", today=date(2024, 5, 1))

        self.assertTrue(enhanced.startswith("Apple\n\nAdditional requirements:"))
        self.assertIn("Current date: 2024-05-01", enhanced)
        self.assertIn("Japanese", enhanced)
        self.assertIn("entities", enhanced)

    def test_history_skips_unknown_roles_and_empty_content(self):
        messages = report_generation.get_prompt(
            "Next",
            history=[{"role": "system", "content": "x"}, {"role": "user", "content": ""}, {"role": "assistant", "content": "ok"}],
        )

        self.assertEqual([message["role"] for message in messages], ["system", "assistant", "user"])


if __name__ == "__main__":
    unittest.main()
