from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Mapping, Sequence
from typing import Any, NoReturn

from .client import AppServerClient, spawn_command
from .converters import validate_settings
from .errors import CodexSettingsError, NoSuchModelError
from .language_model import CodexLanguageModel
from .models import ListModelsResult, ProviderSettings
from .transport import StdioTransport

logger = logging.getLogger(__name__)


def _merge_settings(defaults: ProviderSettings, overrides: ProviderSettings | None) -> ProviderSettings:
    """Overlay explicitly set fields of ``overrides`` onto ``defaults``."""
    if overrides is None:
        return dataclasses.replace(defaults)
    baseline = ProviderSettings()
    changes = {
        f.name: getattr(overrides, f.name)
        for f in dataclasses.fields(overrides)
        if getattr(overrides, f.name) != getattr(baseline, f.name)
    }
    return dataclasses.replace(defaults, **changes)


class CodexAppServerProvider:
    """Factory for `CodexLanguageModel` instances sharing default settings.

    Attributes:
        default_settings: Settings every created model starts from.
    """

    def __init__(self, default_settings: ProviderSettings | None = None) -> None:
        self.default_settings = default_settings or ProviderSettings()

    def __call__(self, model_id: str, settings: ProviderSettings | None = None) -> CodexLanguageModel:
        return self.language_model(model_id, settings)

    def language_model(self, model_id: str, settings: ProviderSettings | None = None) -> CodexLanguageModel:
        """Create a model with ``settings`` layered over the provider defaults.

        Raises:
            CodexSettingsError: The merged settings are invalid.
        """
        merged = _merge_settings(self.default_settings, settings)
        validation = validate_settings(merged)
        if not validation.valid:
            raise CodexSettingsError(validation.errors)
        for warning in validation.warnings:
            logger.warning("%s", warning)
        return CodexLanguageModel(model_id, merged)

    chat = language_model

    def embedding_model(self, model_id: str) -> NoReturn:
        raise NoSuchModelError(model_id, "embeddingModel")

    def image_model(self, model_id: str) -> NoReturn:
        raise NoSuchModelError(model_id, "imageModel")


def create_codex_app_server(default_settings: ProviderSettings | None = None) -> CodexAppServerProvider:
    return CodexAppServerProvider(default_settings)


async def list_models(
    *,
    codex_path: str | None = None,
    model_providers: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> ListModelsResult:
    """List the models the app-server offers.

    Spawns a temporary app-server, queries `model/list`, and shuts it down.

    Args:
        codex_path: Codex executable; defaults to ``$CODEX_PATH`` or ``codex``.
        model_providers: Restrict the listing to these providers.
        env: Extra environment variables for the subprocess.
    """
    process_env = dict(os.environ)
    if env:
        process_env.update(env)
    discovery_log = logging.getLogger(f"{__name__}.discovery")
    transport = StdioTransport(
        spawn_command(ProviderSettings(codex_path=codex_path)),
        env=process_env,
        log=discovery_log,
    )
    params: dict[str, Any] = {}
    if model_providers is not None:
        params["modelProviders"] = list(model_providers)

    async with AppServerClient(transport, log=discovery_log) as client:
        result = await client.list_models(params)

    models = result.get("data", []) if isinstance(result, dict) else []
    parsed = ListModelsResult.model_validate({"models": models})
    parsed.default_model = next((model for model in parsed.models if model.is_default), None)
    return parsed
