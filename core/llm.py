"""
ASTRYON INTELLIGENCE - Completion Service Interface

Everything that talks to a language model goes through one narrow contract:

    await service.complete(messages, system=None, max_tokens=2048) -> str

Design:
- Provider agnostic via LiteLLM ("anthropic/...", "openai/...", ...)
- Failures are classified by HTTP status into distinct error types, each
  with a user-facing message. The core never retries on its own.
- An optional fallback model is tried once when the primary provider fails
  (a different backend, not a retry of the same one).

Architecture:
    Orchestrator / State machines
        |
        v
    CompletionService.complete(messages, system, max_tokens)
        |
        v
    ModelRouter.route(task_type) -> model id
        |
        v
    litellm.acompletion(...)  --fail-->  fallback model (if configured)
        |
        v
    text  |  CompletionError family

Model Routing:
    HIGH_REASONING -> answers, questions, structured maps
    MUNDANE        -> request classification (Step B analysis)
"""
import logging
import os
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import litellm

logger = logging.getLogger(__name__)

Message = Dict[str, str]

DEFAULT_MODEL = "anthropic/claude-sonnet-4-5-20250929"


# =============================================================================
# TASK TYPES (for Model Routing)
# =============================================================================

class TaskType(Enum):
    """
    Task complexity classification for model routing.

    HIGH_REASONING: Answers, Socratic questions, doctrinal maps, synthesis
    MUNDANE: Short classification calls (single vs parallel analysis)
    """
    HIGH_REASONING = "high_reasoning"
    MUNDANE = "mundane"


# =============================================================================
# EXCEPTIONS
# =============================================================================

class CompletionError(Exception):
    """Base exception for completion-service failures."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def user_message(self) -> str:
        if self.status_code is not None:
            return f"API Error ({self.status_code}): {str(self)[:200]}"
        return f"AI request failed: {str(self)[:200]}"


class RateLimitedError(CompletionError):
    """Provider answered 429."""

    @property
    def user_message(self) -> str:
        return "Rate limit reached. Please wait 60 seconds and try again."


class QuotaExceededError(CompletionError):
    """Provider answered 402 or reported an exhausted quota."""

    @property
    def user_message(self) -> str:
        return "API quota exceeded. Check your provider billing."


class ServerError(CompletionError):
    """Provider answered 5xx."""

    @property
    def user_message(self) -> str:
        return f"Server error: {str(self)[:200]}"


def classify_error(exc: BaseException) -> CompletionError:
    """
    Map a provider exception onto the CompletionError family.

    Classification uses the `status_code` attribute LiteLLM exceptions carry;
    an OpenAI-style 429 whose body says the quota is exhausted counts as a
    quota error, not a rate limit.
    """
    if isinstance(exc, CompletionError):
        return exc

    status = getattr(exc, "status_code", None)
    message = str(exc) or exc.__class__.__name__

    if status == 402:
        return QuotaExceededError(message, status_code=status)
    if status == 429:
        if "insufficient_quota" in message or "quota" in message.lower():
            return QuotaExceededError(message, status_code=status)
        return RateLimitedError(message, status_code=status)
    if isinstance(status, int) and status >= 500:
        return ServerError(message, status_code=status)
    return CompletionError(message, status_code=status if isinstance(status, int) else None)


# =============================================================================
# MODEL ROUTER
# =============================================================================

class ModelRouter:
    """
    Deterministic router for model selection.

    Configuration (from astryon.toml):
        [llm]
        model = "anthropic/claude-sonnet-4-5-20250929"
        mundane_model = "anthropic/claude-haiku-4-5-20251001"
        fallback_model = "openai/gpt-4o"

    Model names carry the LiteLLM provider prefix.
    """

    def __init__(self, config: Dict[str, Any]):
        self.high_reasoning_model = config.get("model") or DEFAULT_MODEL
        self.mundane_model = config.get("mundane_model") or self.high_reasoning_model
        self.fallback_model = config.get("fallback_model") or None

    def route(self, task_type: TaskType, use_fallback: bool = False) -> str:
        """
        Model id for a task.

        Raises:
            ValueError: On an unknown task type
        """
        if use_fallback:
            if self.fallback_model is None:
                raise ValueError("No fallback model configured")
            return self.fallback_model

        if task_type == TaskType.HIGH_REASONING:
            return self.high_reasoning_model
        elif task_type == TaskType.MUNDANE:
            return self.mundane_model
        else:
            raise ValueError(f"Unknown task type: {task_type}")


# =============================================================================
# COMPLETION SERVICE
# =============================================================================

class CompletionService(Protocol):
    """Anything that turns a conversation into one text reply."""

    async def complete(
        self,
        messages: List[Message],
        system: Optional[str] = None,
        max_tokens: int = 2048,
        task_type: TaskType = TaskType.HIGH_REASONING,
    ) -> str:
        ...


class LiteLLMCompletionService:
    """
    CompletionService over litellm.acompletion.

    Usage:
        service = LiteLLMCompletionService(ModelRouter({"model": "openai/gpt-4o"}))
        text = await service.complete([{"role": "user", "content": "Hi"}])
    """

    def __init__(
        self,
        router: ModelRouter,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ):
        self.router = router
        self.temperature = temperature
        self.timeout = timeout

        # Disable LiteLLM's verbose logging
        litellm.set_verbose = False

    async def complete(
        self,
        messages: List[Message],
        system: Optional[str] = None,
        max_tokens: int = 2048,
        task_type: TaskType = TaskType.HIGH_REASONING,
    ) -> str:
        """
        Send one completion request.

        Raises:
            RateLimitedError / QuotaExceededError / ServerError / CompletionError
        """
        model = self.router.route(task_type)
        try:
            return await self._call(model, messages, system, max_tokens)
        except Exception as e:
            error = classify_error(e)
            if self.router.fallback_model is None or model == self.router.fallback_model:
                logger.error(f"Completion via {model} failed: {error}")
                raise error from e

            fallback = self.router.route(task_type, use_fallback=True)
            logger.warning(f"Completion via {model} failed ({error}); falling back to {fallback}")
            try:
                return await self._call(fallback, messages, system, max_tokens)
            except Exception as fallback_exc:
                fallback_error = classify_error(fallback_exc)
                logger.error(f"Fallback completion via {fallback} failed: {fallback_error}")
                raise fallback_error from fallback_exc

    async def _call(
        self,
        model: str,
        messages: List[Message],
        system: Optional[str],
        max_tokens: int,
    ) -> str:
        payload: List[Message] = []
        if system:
            payload.append({"role": "system", "content": system})
        payload.extend(messages)

        kwargs: Dict[str, Any] = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        response = await litellm.acompletion(
            model=model,
            messages=payload,
            max_tokens=max_tokens,
            temperature=self.temperature,
            drop_params=True,
            **kwargs,
        )

        content = response.choices[0].message.content
        if not content:
            raise CompletionError(f"Empty completion from {model}")

        logger.debug(f"Completion via {model}: {len(content)} chars")
        return content


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_completion_service: Optional[CompletionService] = None


def get_completion_service() -> CompletionService:
    """
    Get the global completion service.

    Built from the [llm] config section on first use; environment variables
    ASTRYON_LLM_MODEL / ASTRYON_LLM_FALLBACK_MODEL are applied by the config
    loader.
    """
    global _completion_service
    if _completion_service is None:
        from infrastructure.config import get_config

        llm_config = get_config().llm
        router = ModelRouter({
            "model": llm_config.model,
            "mundane_model": llm_config.mundane_model,
            "fallback_model": llm_config.fallback_model,
        })
        _completion_service = LiteLLMCompletionService(
            router,
            temperature=llm_config.temperature,
            timeout=llm_config.timeout,
        )
        logger.info(f"Initialized completion service (model={router.high_reasoning_model})")
    return _completion_service


def set_completion_service(service: Optional[CompletionService]) -> None:
    """Set the global completion service (tests inject scripted fakes)."""
    global _completion_service
    _completion_service = service


def reset_completion_service() -> None:
    global _completion_service
    _completion_service = None


def has_provider_key() -> bool:
    """True if at least one provider API key is present in the environment."""
    return any(
        os.getenv(name)
        for name in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY")
    )
