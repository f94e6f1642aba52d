"""LiteLLM client wrapper with API key validation and error mapping.

All chat and embedding calls made by the workers route through this module.
Retries are disabled (``num_retries=0``): a failed remote call fails the job,
and recovery is an operator re-enqueue, never a silent retry.

Provider failures are re-raised as ``ChatError`` / ``EmbeddingError`` carrying
the HTTP status (when the provider reported one) and the response body.
"""

from __future__ import annotations

import os

import litellm

from qualflow.errors import ChatError, EmbeddingError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "cohere": "COHERE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def _provider(model: str) -> str:
    return model.split("/")[0].lower() if "/" in model else "openai"


def provider_env_var(model: str) -> str | None:
    """Env var holding the API key for *model*'s provider; None for local providers."""
    provider = _provider(model)
    if provider in _PROVIDER_ENV:
        return _PROVIDER_ENV[provider]
    return f"{provider.upper()}_API_KEY"


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = _provider(model)
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def _status_of(exc: Exception) -> int | None:
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def complete(
    model: str,
    system_prompt: str,
    user_prompt: str,
    *,
    temperature: float = 0.3,
    max_tokens: int = 1_000,
) -> str:
    """Call litellm.completion() once. Returns the content string.

    Raises:
        ChatError: On any provider or transport failure.
    """
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})

    try:
        response = litellm.completion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            num_retries=0,
        )
    except Exception as exc:
        raise ChatError(_status_of(exc), str(exc)) from exc
    return response.choices[0].message.content or ""


def embed_texts(texts: list[str], model: str) -> list[list[float]]:
    """Call litellm.embedding() once for the whole batch.

    Returns:
        One vector per input text, in provider order. Shape is validated by
        the caller (``EmbeddingBatcher``).

    Raises:
        EmbeddingError: On any provider or transport failure.
    """
    try:
        response = litellm.embedding(model=model, input=texts, num_retries=0)
    except Exception as exc:
        raise EmbeddingError(_status_of(exc), str(exc)) from exc
    return [item["embedding"] for item in response.data]
