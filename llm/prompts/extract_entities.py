"""Prompt template for extracting financial entities from a finished report."""

from __future__ import annotations

from typing import Dict, List

MAX_REPORT_CHARS = 8000

SYSTEM_PROMPT = (
    "You are a financial entity extraction specialist. "
    "You read analyst reports and list the named financial subjects they discuss. Return JSON only."
)

USER_PROMPT_TEMPLATE = """Extract the named financial entities from the report below.

For each entity provide:
- name: standardized, commonly known name (e.g. "Apple", not "Apple Inc.")
- type: one of COMPANY, STOCK, PERSON, PRODUCT, SECTOR, CRYPTOCURRENCY, COMMODITY, INDEX, ETF
- ticker: primary ticker symbol when one exists, otherwise null
- context: the sentence where the entity is discussed (max 200 characters)
- sentiment: -1.0 (very negative) to 1.0 (very positive)
- relevance: 0.0 to 1.0, how central the entity is to the report
- mentions: how many times the report mentions the entity

Deduplicate entities and keep only the 3-10 most relevant ones.

Return JSON:
{
  "entities": [
    {"name": "...", "type": "COMPANY", "ticker": "...", "context": "...", "sentiment": 0.0, "relevance": 0.0, "mentions": 1}
  ]
}

REPORT:
{{REPORT_TEXT}}
"""


def get_prompt(report_text: str) -> List[Dict[str, str]]:
    snippet = report_text[:MAX_REPORT_CHARS]
    if len(report_text) > MAX_REPORT_CHARS:
        snippet += " ... (truncated)"
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": USER_PROMPT_TEMPLATE.replace("{{REPORT_TEXT}}", snippet)},
    ]


__all__ = ["MAX_REPORT_CHARS", "get_prompt"]
