"""LiteLLM helpers shared by report streaming and entity extraction."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import litellm
import yaml
from langfuse import Langfuse

from core.env import env_str
from core.logging import get_logger

logger = get_logger(__name__)


def load_model_aliases(config_path: Optional[str]) -> Dict[str, str]:
    """Read ``model_name -> litellm_params.model`` pairs from a proxy-style YAML file."""
    if not config_path or not Path(config_path).is_file():
        return {}
    try:
        config = yaml.safe_load(Path(config_path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable LiteLLM config %s: %s", config_path, exc)
        return {}
    entries = config.get("model_list") if isinstance(config, dict) else None
    aliases: Dict[str, str] = {}
    for entry in entries if isinstance(entries, list) else []:
        params = entry.get("litellm_params") if isinstance(entry, dict) else None
        alias = entry.get("model_name") if isinstance(entry, dict) else None
        target = params.get("model") if isinstance(params, dict) else None
        if alias and isinstance(target, str) and target:
            aliases.setdefault(alias, target)
    return aliases


def register_model_aliases(config_path: Optional[str] = None) -> Dict[str, str]:
    aliases = load_model_aliases(config_path or env_str("LITELLM_CONFIG_PATH"))
    if aliases:
        litellm.model_alias_map.update(aliases)
        logger.info("Registered %d LiteLLM model aliases.", len(aliases))
    return aliases


register_model_aliases()


@lru_cache
def get_langfuse_client() -> Optional[Langfuse]:
    public_key = os.getenv("LANGFUSE_PUBLIC_KEY")
    secret_key = os.getenv("LANGFUSE_SECRET_KEY")
    if not (public_key and secret_key):
        return None
    try:
        client = Langfuse(public_key=public_key, secret_key=secret_key, host=os.getenv("LANGFUSE_HOST"))
    except Exception as exc:
        logger.error("Langfuse client unavailable: %s", exc, exc_info=True)
        return None
    logger.info("Langfuse tracing enabled.")
    return client


def record_langfuse_event(
    model: str,
    messages: List[Dict[str, Any]],
    *,
    name: str = "completion",
    response_content: Optional[str] = None,
    error: Optional[str] = None,
    usage: Optional[Dict[str, int]] = None,
) -> None:
    client = get_langfuse_client()
    if client is None:
        return
    prompt = messages[-1].get("content") if messages else ""
    if not isinstance(prompt, str):
        prompt = json.dumps(prompt, ensure_ascii=False)
    try:
        trace = client.trace(name=name, metadata={"model": model})
        trace.generation(
            name=name,
            model=model,
            input=prompt[:2000],
            output=(response_content or "")[:2000],
            usage=usage,
            level="ERROR" if error else "DEFAULT",
            status_message=error,
        )
        client.flush()
    except Exception as exc:
        logger.debug("Langfuse trace dropped: %s", exc, exc_info=True)


def _field(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def extract_usage_payload(response: Any) -> Optional[Dict[str, int]]:
    """Token counts from a litellm response or stream chunk, whichever shape it has."""
    usage = _field(response, "usage")
    if usage is None:
        return None
    keys = usage.keys() if isinstance(usage, Mapping) else ("prompt_tokens", "completion_tokens", "total_tokens")
    counts = {key: _field(usage, key) for key in keys}
    cleaned = {key: int(value) for key, value in counts.items() if isinstance(value, (int, float))}
    return cleaned or None


def choice_content(response: Any) -> str:
    choices = _field(response, "choices")
    if not isinstance(choices, list) or not choices:
        return ""
    content = _field(_field(choices[0], "message"), "content")
    return content if isinstance(content, str) else ""


def estimate_cost(model: str, usage: Optional[Dict[str, int]]) -> Optional[float]:
    """USD estimate from litellm's price table; ``None`` for unknown models."""
    if not usage:
        return None
    try:
        prompt_cost, completion_cost = litellm.cost_per_token(
            model=model,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
        )
    except Exception as exc:
        logger.debug("No pricing for model %s: %s", model, exc)
        return None
    return round(float(prompt_cost) + float(completion_cost), 6)


async def json_completion(
    model: str,
    messages: List[Dict[str, Any]],
    *,
    timeout: Optional[float] = None,
    name: str = "json_completion",
) -> Dict[str, Any]:
    """Run a JSON-mode completion; errors come back as ``{"error": ...}``."""
    try:
        response = await litellm.acompletion(
            model=model,
            messages=messages,
            response_format={"type": "json_object"},
            timeout=timeout,
        )
    except Exception as exc:
        logger.warning("LLM call failed for %s: %s", model, exc, exc_info=True)
        record_langfuse_event(model, messages, name=name, error=str(exc))
        return {"error": f"LLM call failed for model {model}: {exc}"}

    content = choice_content(response)
    record_langfuse_event(model, messages, name=name, response_content=content, usage=extract_usage_payload(response))
    try:
        payload = json.loads(content or "{}")
    except json.JSONDecodeError as exc:
        logger.error("JSON decode failure: %s", exc)
        return {"error": f"JSON decode failure: {exc}", "model_used": model}
    if not isinstance(payload, dict):
        return {"error": "JSON payload is not an object", "model_used": model}
    payload["model_used"] = model
    return payload


__all__ = [
    "choice_content",
    "estimate_cost",
    "extract_usage_payload",
    "get_langfuse_client",
    "json_completion",
    "load_model_aliases",
    "record_langfuse_event",
    "register_model_aliases",
]
