"""Factory building the provider adapter selected by configuration."""

import logging
from typing import Optional, Union

import httpx

from chatter.lib.config import ChatterConfig
from chatter.models.conversation_session import ModelProvider
from chatter.services.base_provider_adapter import BaseProviderAdapter, ProviderError
from chatter.services.gemini_adapter import GeminiAdapter
from chatter.services.ollama_adapter import OllamaAdapter


logger = logging.getLogger(__name__)


def create_adapter(
    config: ChatterConfig,
    provider: Optional[Union[ModelProvider, str]] = None,
    model: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None
) -> BaseProviderAdapter:
    """Create an adapter for the given provider and model.

    Args:
        config: Loaded configuration
        provider: Provider override, the configured provider by default
        model: Model override, the configured default model by default
        client: Optional HTTP client shared with the caller

    Raises:
        ProviderError: If the provider is unknown or misconfigured
    """
    try:
        selected = ModelProvider(provider or config.provider)
    except ValueError:
        raise ProviderError(
            f"Unknown provider: {provider}. Supported providers: {', '.join(p.value for p in ModelProvider)}"
        )
    model_name = model or config.default_model

    if selected == ModelProvider.GEMINI:
        adapter: BaseProviderAdapter = GeminiAdapter(
            api_key=config.api_key,
            model=model_name,
            base_url=config.gemini.base_url,
            request_timeout=config.gemini.request_timeout,
            connect_timeout=config.gemini.connect_timeout,
            client=client
        )
    else:
        adapter = OllamaAdapter(
            model=model_name,
            endpoint=config.ollama.endpoint,
            supports_function_calling=config.ollama.supports_function_calling,
            request_timeout=config.ollama.request_timeout,
            connect_timeout=config.ollama.connect_timeout,
            client=client
        )

    logger.info(f"Created {selected.value} adapter for model {model_name}")
    return adapter
