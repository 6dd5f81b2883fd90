"""Inference engines the AI tasks run on.

Every engine exposes the same small surface: a one-time ``load`` that
reports progress, a chat reset, a finite stream of text deltas for one
system + user exchange, best-effort interruption, and a runtime stats
string for display.
"""

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from ..logger import logger
from .models import AppSettings

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
DEFAULT_LM_STUDIO_API_KEY = "lm-studio"
MAX_TOKENS = 2048

LMSTUDIO = "lmstudio"
OPENAI = "openai"
ANTHROPIC = "anthropic"


class EngineLoadError(Exception):
    """The inference engine could not be created or loaded."""


@dataclass
class InitProgressReport:
    progress: float
    text: str


ProgressCallback = Callable[[InitProgressReport], None]
ChatMessage = dict[str, str]


class InferenceEngine(ABC):
    name = "engine"

    def __init__(self, model: str | None = None):
        self.model = model
        self._loaded = False
        self._interrupted = False
        self._message = ""
        self._stats = ""

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self, progress_callback: ProgressCallback | None = None) -> None:
        """Prepare the engine for chatting.

        Raises:
            EngineLoadError: If the backing model is unreachable.
        """
        report = progress_callback or (lambda _: None)
        report(InitProgressReport(progress=0.0, text=f"Loading model {self.model or ''}".strip()))
        try:
            await self._load()
        except EngineLoadError:
            raise
        except Exception as e:
            logger.error("engine load failed", engine=self.name, model=self.model, error=str(e))
            raise EngineLoadError(str(e)) from e
        self._loaded = True
        report(InitProgressReport(progress=1.0, text=f"Finish loading {self.model}"))
        logger.info("engine loaded", engine=self.name, model=self.model)

    async def _load(self) -> None:
        pass

    async def has_model_in_cache(self) -> bool:
        return self._loaded

    async def reset_chat(self) -> None:
        self._interrupted = False
        self._message = ""

    @abstractmethod
    def stream_chat(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        """Yield text deltas of the reply to ``messages``."""

    def interrupt_generate(self) -> None:
        self._interrupted = True

    async def get_message(self) -> str:
        return self._message

    async def runtime_stats_text(self) -> str:
        return self._stats

    def _record_stats(self, started: float, deltas: int, prompt_tokens=None, completion_tokens=None) -> None:
        seconds = time.perf_counter() - started
        if completion_tokens:
            rate = completion_tokens / seconds if seconds else 0.0
            self._stats = (
                f"prefill: {prompt_tokens or 0} tokens, decoding: {completion_tokens} tokens, "
                f"{rate:.1f} tokens/sec"
            )
        else:
            rate = deltas / seconds if seconds else 0.0
            self._stats = f"decoding: {deltas} chunks in {seconds:.2f} sec, {rate:.1f} chunks/sec"


class OpenAICompatibleEngine(InferenceEngine):
    """Chat completions over the OpenAI API or any server speaking it (LM Studio)."""

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        name: str = OPENAI,
    ):
        super().__init__(model)
        self.name = name
        self.base_url = base_url
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OpenAI API key required: provide api_key or set OPENAI_API_KEY")
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def _load(self) -> None:
        models = await self._client.models.list()
        available = [m.id for m in models.data]
        if self.model is None:
            if not available:
                raise EngineLoadError(f"no model available at {self.base_url}")
            self.model = available[0]

    async def has_model_in_cache(self) -> bool:
        if self.model is None:
            return False
        try:
            models = await self._client.models.list()
        except Exception as e:
            logger.warn("model listing failed", engine=self.name, error=str(e))
            return False
        return any(m.id == self.model for m in models.data)

    async def stream_chat(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        started = time.perf_counter()
        deltas = 0
        usage = None
        stream = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            stream=True,
        )
        try:
            async for chunk in stream:
                if self._interrupted:
                    logger.info("generation interrupted", engine=self.name, deltas=deltas)
                    break
                if getattr(chunk, "usage", None):
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    deltas += 1
                    self._message += delta
                    yield delta
        finally:
            await stream.close()
            self._record_stats(
                started,
                deltas,
                prompt_tokens=usage.prompt_tokens if usage else None,
                completion_tokens=usage.completion_tokens if usage else None,
            )


class AnthropicEngine(InferenceEngine):
    name = ANTHROPIC

    def __init__(self, model: str = DEFAULT_ANTHROPIC_MODEL, api_key: str | None = None):
        super().__init__(model)
        api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("Anthropic API key required: provide api_key or set ANTHROPIC_API_KEY")
        self._client = AsyncAnthropic(api_key=api_key)

    async def stream_chat(self, messages: list[ChatMessage]) -> AsyncIterator[str]:
        system = "\n".join(m["content"] for m in messages if m["role"] == "system")
        chat = [m for m in messages if m["role"] != "system"]

        started = time.perf_counter()
        deltas = 0
        usage = None
        async with self._client.messages.stream(
            model=self.model,
            max_tokens=MAX_TOKENS,
            system=system,
            messages=chat,
        ) as stream:
            try:
                async for text in stream.text_stream:
                    if self._interrupted:
                        logger.info("generation interrupted", engine=self.name, deltas=deltas)
                        break
                    deltas += 1
                    self._message += text
                    yield text
                else:
                    usage = (await stream.get_final_message()).usage
            finally:
                self._record_stats(
                    started,
                    deltas,
                    prompt_tokens=usage.input_tokens if usage else None,
                    completion_tokens=usage.output_tokens if usage else None,
                )


def lm_studio_engine(settings: AppSettings) -> OpenAICompatibleEngine:
    return OpenAICompatibleEngine(
        model=settings.lm_studio_model or settings.preferred_model,
        api_key=os.getenv("LM_STUDIO_API_KEY", DEFAULT_LM_STUDIO_API_KEY),
        base_url=settings.lm_studio_url,
        name=LMSTUDIO,
    )


def create_engine(settings: AppSettings) -> InferenceEngine:
    """Build the engine named by ``AI_ENGINE`` or, failing that, the settings.

    Engines that only exist in the browser (``webllm``) fall back to LM
    Studio when the settings allow it.

    Raises:
        EngineLoadError: If the engine cannot be built.
    """
    name = (os.getenv("AI_ENGINE") or settings.ai_engine).lower()
    try:
        if name == LMSTUDIO:
            return lm_studio_engine(settings)
        if name == OPENAI:
            return OpenAICompatibleEngine(
                model=os.getenv("OPENAI_MODEL") or settings.preferred_model or DEFAULT_OPENAI_MODEL,
            )
        if name == ANTHROPIC:
            return AnthropicEngine(
                model=os.getenv("ANTHROPIC_MODEL") or settings.preferred_model or DEFAULT_ANTHROPIC_MODEL,
            )
        if settings.fallback_enabled:
            logger.warn("engine unavailable on server, falling back to LM Studio", engine=name)
            return lm_studio_engine(settings)
    except ValueError as e:
        raise EngineLoadError(str(e)) from e
    raise EngineLoadError(f"engine {name} is not available and fallback is disabled")
