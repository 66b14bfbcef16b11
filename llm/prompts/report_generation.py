"""System prompts and user-prompt enhancement for streamed report generation."""

from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional, Sequence

FINANCIAL_ANALYSIS = """You are a world-class financial analyst with expertise in market analysis, fundamental analysis, and technical analysis.
You provide comprehensive, data-driven insights that rival institutional research reports.
Your analysis should be:
- Data-driven with specific metrics and numbers
- Professional and institutional-grade
- Actionable with clear recommendations
- Visually structured with clear sections

Format your response as HTML. Start every section with an <h2> heading on its own line.
Include tables, lists, and structured data where appropriate.
Always name the companies, stocks, and other entities you discuss explicitly."""

MARKET_RESEARCH = """You are a senior market research analyst specializing in industry analysis and competitive intelligence.
Your reports should include:
- Market size and growth projections
- Competitive landscape and market share of key players
- Trends, opportunities, risk factors and challenges
- Investment recommendations

Format your response as HTML. Start every section with an <h2> heading on its own line."""

TECHNICAL_ANALYSIS = """You are an expert technical analyst with deep knowledge of chart patterns, indicators, and market psychology.
Your analysis should include:
- Price action, support and resistance levels
- Technical indicators (RSI, MACD, moving averages) and volume
- Chart pattern identification
- Entry and exit recommendations with specific price levels and timeframes

Format your response as HTML. Start every section with an <h2> heading on its own line."""

_TECHNICAL_KEYWORDS = ("technical", "chart", "indicator")
_MARKET_KEYWORDS = ("market", "industry", "competitive")

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "zh": "Chinese",
    "ja": "Japanese",
}


def select_system_prompt(user_prompt: str) -> str:
    lowered = (user_prompt or "").lower()
    if any(keyword in lowered for keyword in _TECHNICAL_KEYWORDS):
        return TECHNICAL_ANALYSIS
    if any(keyword in lowered for keyword in _MARKET_KEYWORDS):
        return MARKET_RESEARCH
    return FINANCIAL_ANALYSIS


def enhance_prompt(
    prompt: str,
    *,
    language: str = "en",
    extract_entities: bool = True,
    today: Optional[date] = None,
) -> str:
    requirements = [f"Current date: {(today or date.today()).isoformat()}"]
    if extract_entities:
        requirements.append("Clearly identify all companies, stocks, people, and other entities mentioned.")
    if language != "en":
        requirements.append(f"Generate the report in {LANGUAGE_NAMES.get(language, language)}.")
    return f"{prompt}\n\nAdditional requirements:\n" + "\n".join(requirements)


def get_prompt(
    prompt: str,
    *,
    system_prompt: Optional[str] = None,
    history: Sequence[Dict[str, str]] = (),
    language: str = "en",
    extract_entities: bool = True,
) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = [
        {"role": "system", "content": system_prompt or select_system_prompt(prompt)},
    ]
    for entry in history:
        role = entry.get("role")
        content = entry.get("content")
        if role in {"user", "assistant"} and content:
            messages.append({"role": role, "content": content})
    messages.append(
        {
            "role": "user",
            "content": enhance_prompt(prompt, language=language, extract_entities=extract_entities),
        }
    )
    return messages


__all__ = ["enhance_prompt", "get_prompt", "select_system_prompt"]
