"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status

from llm.stream_client import LiteLLMStreamClient, ModelStreamClient, ScriptedStreamClient
from services.generation.config import GenerationSettings, get_generation_settings
from services.generation.entity_extraction import EntityExtractor, LiteLLMEntityExtractor, NullEntityExtractor
from services.generation.orchestrator import ReportGenerationOrchestrator
from services.generation.registry import GenerationRegistry
from web.middleware.auth_context import AuthenticatedUser


def get_current_user(request: Request) -> AuthenticatedUser:
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "Authentication is required."},
        )
    return user


def get_settings() -> GenerationSettings:
    return get_generation_settings()


@lru_cache
def _shared_registry(lease_ttl_seconds: float) -> GenerationRegistry:
    return GenerationRegistry(lease_ttl_seconds=lease_ttl_seconds)


def get_generation_registry(settings: GenerationSettings = Depends(get_settings)) -> GenerationRegistry:
    """One registry per process; tests override this dependency with a fresh instance."""
    return _shared_registry(settings.lease_ttl_seconds)


def get_model_client(settings: GenerationSettings = Depends(get_settings)) -> ModelStreamClient:
    if settings.use_mock_model:
        return ScriptedStreamClient(delay=0.05)
    return LiteLLMStreamClient(
        fallback_model=settings.fallback_model,
        request_timeout=settings.total_timeout_seconds,
    )


def get_entity_extractor(settings: GenerationSettings = Depends(get_settings)) -> EntityExtractor:
    if settings.use_mock_model:
        return NullEntityExtractor()
    return LiteLLMEntityExtractor(model=settings.entity_model, timeout_seconds=settings.entity_timeout_seconds)


def get_orchestrator(
    settings: GenerationSettings = Depends(get_settings),
    registry: GenerationRegistry = Depends(get_generation_registry),
    model_client: ModelStreamClient = Depends(get_model_client),
    entity_extractor: EntityExtractor = Depends(get_entity_extractor),
) -> ReportGenerationOrchestrator:
    return ReportGenerationOrchestrator(
        model_client=model_client,
        entity_extractor=entity_extractor,
        registry=registry,
        settings=settings,
    )


__all__ = [
    "get_current_user",
    "get_entity_extractor",
    "get_generation_registry",
    "get_model_client",
    "get_orchestrator",
    "get_settings",
]
