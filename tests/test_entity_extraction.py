import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from services.generation.entity_extraction import (
    LiteLLMEntityExtractor,
    NullEntityExtractor,
    html_to_text,
    slugify,
)

REPORT_HTML = "<h2>Summary</h2><p>Apple Inc. &amp; Microsoft lead the market.</p>"


def _extract(payload):
    extractor = LiteLLMEntityExtractor(model="claude-3-haiku-20240307", timeout_seconds=1.0)
    with patch("llm.llm_service.json_completion", new=AsyncMock(return_value=payload)) as mocked:
        entities = asyncio.run(extractor.extract(REPORT_HTML))
    return entities, mocked


def test_html_to_text_and_slugify():
    assert html_to_text(REPORT_HTML) == "Summary Apple Inc. & Microsoft lead the market."
    assert slugify("Apple Inc.") == "apple-inc"
    assert slugify("S&P 500") == "s-p-500"


def test_entities_are_normalized_and_ranked():
    payload = {
        "entities": [
            {"name": "Microsoft", "type": "company", "ticker": "msft", "sentiment": 2, "relevance": 0.4},
            {"name": "Apple Inc.", "type": "UNKNOWN", "ticker": "null", "relevance": 0.9, "mentions": "3"},
            {"name": "apple inc", "type": "STOCK", "relevance": 0.1},
            {"name": "  ", "type": "COMPANY"},
            "not-a-dict",
        ],
        "model_used": "claude-3-haiku-20240307",
    }

    entities, mocked = _extract(payload)

    assert [entity.slug for entity in entities] == ["apple-inc", "microsoft"]
    apple, microsoft = entities
    assert apple.type == "COMPANY"
    assert apple.ticker is None
    assert apple.mentions == 3
    assert microsoft.type == "COMPANY"
    assert microsoft.ticker == "MSFT"
    assert microsoft.sentiment == 1.0
    sent_messages = mocked.await_args.args[1]
    assert "Apple Inc. & Microsoft" in sent_messages[-1]["content"]


def test_entity_count_is_capped():
    payload = {"entities": [{"name": f"Company {index}", "relevance": index / 20} for index in range(15)]}

    entities, _ = _extract(payload)

    assert len(entities) == 10
    assert entities[0].name == "Company 14"


@pytest.mark.parametrize("payload", [{"error": "LLM call failed"}, {"entities": "Apple"}, {}])
def test_failed_extraction_yields_no_entities(payload):
    entities, _ = _extract(payload)

    assert entities == []


def test_blank_text_skips_model_call():
    extractor = LiteLLMEntityExtractor(model="claude-3-haiku-20240307", timeout_seconds=1.0)
    with patch("llm.llm_service.json_completion", new=AsyncMock()) as mocked:
        entities = asyncio.run(extractor.extract("<p> </p>"))

    assert entities == []
    mocked.assert_not_awaited()


def test_slow_extraction_times_out():
    async def slow(*args, **kwargs):
        await asyncio.sleep(5)
        return {"entities": []}

    extractor = LiteLLMEntityExtractor(model="claude-3-haiku-20240307", timeout_seconds=0.05)
    with patch("llm.llm_service.json_completion", new=slow):
        entities = asyncio.run(extractor.extract(REPORT_HTML))

    assert entities == []


def test_null_extractor():
    assert asyncio.run(NullEntityExtractor().extract(REPORT_HTML)) == []
