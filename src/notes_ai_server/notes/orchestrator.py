"""Sequences AI prompts over a document and writes streamed replies into blocks.

One ``AITaskOrchestrator`` owns the engine handle and the state of the
single task that may run at a time. Tasks mutate the ``BlockDocument``
they are given, the way an editor would while the reply streams in.
"""

import asyncio
import inspect
import os
import time
from contextlib import aclosing, asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

from pydantic import BaseModel

from ..logger import log_context, logger
from .blocks import (
    BlockDocument,
    add_block,
    block_to_string,
    blocks_to_markdown,
    duplicate_document,
    editor_block_ids,
    markdown_to_blocks,
    update_block_text,
)
from .diffing import WORD_BY_WORD, annotate_correction, diff_text
from .engines import EngineLoadError, InferenceEngine, InitProgressReport
from .models import CamelModel
from .prompts import (
    CORRECT_PREFIX,
    CORRECTION_PLACEHOLDER,
    DEVELOP_PREFIX,
    DOWNLOADING_WEIGHTS,
    GENERIC_ERROR,
    INPUT_TOO_LONG,
    INTERMEDIATE_SUMMARY,
    LOAD_FAILURE_PREFIX,
    LOADING_FROM_CACHE,
    LOADING_MESSAGES,
    LOADING_MODEL,
    SUMMARY_PLACEHOLDER,
    TRANSLATE_PREFIX,
    TRANSLATION_PLACEHOLDER,
    build_messages,
    check_input_length,
    summarize_prompt,
)

SUMMARY_BLOCK_ID = "New block summary"
DEVELOP_BLOCK_ID = "New block development"


class TaskType(str, Enum):
    TRANSLATION = "translation"
    CORRECTION = "correction"
    SUMMARY = "summary"
    DEVELOP = "develop"


class TaskState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    SETTLED = "settled"


class OrchestratorBusyError(Exception):
    """Another AI task is already running."""


class TaskResult(CamelModel):
    task: TaskType
    document: list[dict]
    output: list[dict] | None = None
    prompts_sent: int = 0
    cancelled: bool = False
    error: str | None = None


class OrchestratorStatus(CamelModel):
    state: TaskState
    current_task: TaskType | None = None
    output: str = ""
    error: str | None = None
    progress: str = ""
    progress_percentage: float = 0.0
    runtime_stats: str = ""
    engine_loaded: bool = False
    model_in_cache: bool = False


class _Run(BaseModel):
    task: TaskType
    cancelled: bool = False
    prompts_sent: int = 0


def _join(*parts: str) -> str:
    return "\n".join(part for part in parts if part)


class AITaskOrchestrator:
    def __init__(
        self,
        engine_factory: Callable[[], InferenceEngine | Awaitable[InferenceEngine]],
        diff_design: int | None = None,
    ):
        """
        Args:
            engine_factory: Builds the engine on first use. May be a coroutine
                function, so factories that read settings from the store can
                await it off the event loop.
            diff_design: Default diff design for corrections, 1 to 3.
        """
        self._engine_factory = engine_factory
        self.diff_design = diff_design or int(os.getenv("DIFF_DESIGN", WORD_BY_WORD))
        self.engine: InferenceEngine | None = None
        self.state = TaskState.IDLE
        self.current_task: TaskType | None = None
        self.output = ""
        self.error: str | None = None
        self.progress = ""
        self.progress_percentage = 0.0
        self.runtime_stats = ""
        self.model_in_cache = False
        self._run: _Run | None = None
        self._load_lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._run is not None

    def status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            state=self.state,
            current_task=self.current_task,
            output=self.output,
            error=self.error,
            progress=self.progress,
            progress_percentage=self.progress_percentage,
            runtime_stats=self.runtime_stats,
            engine_loaded=self.engine is not None,
            model_in_cache=self.model_in_cache,
        )

    def reset_engine(self) -> None:
        """Drop the loaded engine so the next prompt builds a fresh one."""
        if self.busy:
            raise OrchestratorBusyError(f"{self.current_task.value} in progress")
        self.engine = None
        self.model_in_cache = False

    def _on_progress(self, report: InitProgressReport) -> None:
        if self.model_in_cache or report.text.startswith("Loading model from cache"):
            self.output = LOADING_FROM_CACHE
        else:
            self.output = DOWNLOADING_WEIGHTS
        if report.progress != 0:
            self.progress_percentage = report.progress
        if report.progress == 1:
            self.progress_percentage = 0.0
            self.output = ""
            self.progress = ""
            return
        self.progress = report.text

    async def _create_engine(self) -> InferenceEngine:
        engine = self._engine_factory()
        if inspect.isawaitable(engine):
            engine = await engine
        return engine

    async def ensure_engine_loaded(self) -> InferenceEngine:
        """Return the engine, building and loading it on first use.

        Raises:
            EngineLoadError: With a message starting "Could not load the model because".
        """
        if self.engine is not None:
            return self.engine

        async with self._load_lock:
            if self.engine is not None:
                return self.engine

            self.output = LOADING_MODEL
            start = time.perf_counter()
            try:
                engine = await self._create_engine()
                await engine.load(self._on_progress)
            except Exception as e:
                message = LOAD_FAILURE_PREFIX + str(e)
                self.output = message
                logger.error("engine load failed", error=str(e))
                raise EngineLoadError(message) from e

            self.engine = engine
            self.model_in_cache = await engine.has_model_in_cache()
            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "engine ready",
                engine=engine.name,
                model=engine.model,
                duration_ms=round(duration_ms, 2),
            )
            return engine

    async def is_model_cached(self) -> bool:
        try:
            engine = self.engine or await self._create_engine()
            self.model_in_cache = await engine.has_model_in_cache()
        except EngineLoadError as e:
            logger.warn("model cache check failed", error=str(e))
            self.model_in_cache = False
        return self.model_in_cache

    async def send(
        self,
        prompt: str,
        task: TaskType,
        on_update: Callable[[str], None],
    ) -> str | None:
        """Send one prompt and push the accumulated reply to ``on_update``.

        Returns the final reply, or None when the prompt is empty, too long,
        or the generation failed. Failures set ``output`` or ``error``
        instead of raising; only an engine load failure propagates.
        """
        if prompt == "":
            return None
        run = self._run
        self.output = LOADING_MESSAGES[task.value]

        engine = await self.ensure_engine_loaded()

        messages = build_messages(task.value, prompt)
        if check_input_length(messages):
            self.error = INPUT_TOO_LONG
            logger.warn("prompt too long", task=task.value, prompt_length=len(prompt))
            return None

        if run is not None:
            run.prompts_sent += 1
        self.state = TaskState.DISPATCHING
        logger.info("prompt dispatched", task=task.value, prompt_length=len(prompt))
        start = time.perf_counter()
        try:
            await engine.reset_chat()
            accumulated = ""
            async with aclosing(engine.stream_chat(messages)) as deltas:
                async for delta in deltas:
                    if run is not None and run.cancelled:
                        break
                    self.state = TaskState.STREAMING
                    accumulated += delta
                    on_update(accumulated)
            text = await engine.get_message()
            self.runtime_stats = await engine.runtime_stats_text()
        except Exception as e:
            logger.exception("prompt failed", task=task.value, error=str(e))
            self.output = GENERIC_ERROR
            self.error = GENERIC_ERROR
            return None

        if run is None or not run.cancelled:
            self.state = TaskState.SETTLED
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "prompt settled",
            task=task.value,
            response_length=len(text),
            duration_ms=round(duration_ms, 2),
        )
        return text

    @asynccontextmanager
    async def _task(self, task: TaskType) -> AsyncIterator[_Run]:
        if self._run is not None:
            raise OrchestratorBusyError(f"{self._run.task.value} already in progress")

        run = _Run(task=task)
        self._run = run
        self.current_task = task
        self.error = None
        start = time.perf_counter()
        with log_context(task=task.value):
            logger.info("task started")
            try:
                yield run
                self.output = ""
            except Exception as e:
                logger.error("task failed", error=str(e))
                raise
            finally:
                if self._run is run:
                    self._run = None
                    self.current_task = None
                    self.state = TaskState.IDLE
                duration_ms = (time.perf_counter() - start) * 1000
                logger.info(
                    "task finished",
                    cancelled=run.cancelled,
                    prompts_sent=run.prompts_sent,
                    duration_ms=round(duration_ms, 2),
                )

    def stop(self) -> bool:
        """Ask the running task to stop. Text already written stays in place."""
        run = self._run
        if run is None:
            logger.info("stop requested with no task running")
            return False

        run.cancelled = True
        if self.engine is not None:
            self.engine.interrupt_generate()
        self._run = None
        self.current_task = None
        self.state = TaskState.IDLE
        self.output = ""
        logger.info("task interrupted", task=run.task.value, prompts_sent=run.prompts_sent)
        return True

    def _result(self, run: _Run, doc: BlockDocument, output: BlockDocument | None = None) -> TaskResult:
        return TaskResult(
            task=run.task,
            document=doc.blocks,
            output=output.blocks if output is not None else None,
            prompts_sent=run.prompts_sent,
            cancelled=run.cancelled,
            error=self.error,
        )

    async def translate(self, doc: BlockDocument) -> TaskResult:
        """Translate every text block into a parallel output document."""
        async with self._task(TaskType.TRANSLATION) as run:
            doc.flatten()
            output, ids = duplicate_document(doc, TRANSLATION_PLACEHOLDER, "red")

            for block_id in ids:
                if run.cancelled:
                    break
                block = doc.get_block(block_id)
                if block_to_string(block) == "":
                    continue

                def write(translated: str, block_id: str = block_id) -> None:
                    translated_blocks = markdown_to_blocks(translated)
                    if translated_blocks and output.get_block(block_id) is not None:
                        output.update_block(block_id, content=translated_blocks[0]["content"])

                await self.send(TRANSLATE_PREFIX + blocks_to_markdown([block]), TaskType.TRANSLATION, write)

            return self._result(run, doc, output)

    async def _correct_block(
        self,
        source: BlockDocument,
        dest: BlockDocument,
        block_id: str,
        design: int,
    ) -> str | None:
        text = block_to_string(source.get_block(block_id))
        if text == "":
            return None

        def write(corrected: str) -> None:
            try:
                if design == WORD_BY_WORD:
                    source_runs, corrected_runs = diff_text(text, corrected, design)
                    dest.update_block(block_id, content=corrected_runs)
                    source.update_block(block_id, content=source_runs)
                else:
                    dest.update_block(block_id, content=annotate_correction(text, corrected, design))
            except Exception as e:
                logger.warn("correction diff failed", block_id=block_id, error=str(e))

        return await self.send(CORRECT_PREFIX + text, TaskType.CORRECTION, write)

    async def correct(self, doc: BlockDocument) -> TaskResult:
        """Correct every text block, annotating the differences."""
        async with self._task(TaskType.CORRECTION) as run:
            doc.flatten()
            output, ids = duplicate_document(doc, CORRECTION_PLACEHOLDER, "blue")
            for block_id in ids:
                if run.cancelled:
                    break
                await self._correct_block(doc, output, block_id, self.diff_design)
            return self._result(run, doc, output)

    async def correct_single_block(
        self,
        source: BlockDocument,
        dest: BlockDocument,
        block_id: str,
        design: int | None = None,
    ) -> TaskResult:
        async with self._task(TaskType.CORRECTION) as run:
            await self._correct_block(source, dest, block_id, design or self.diff_design)
            return self._result(run, source, dest)

    async def summarize(self, doc: BlockDocument) -> TaskResult:
        """Summarize the document section by section, bottom-up.

        Blocks are visited in reverse order. Body text collects until a
        heading closes its section: a level 3 heading summarizes the body
        above it, level 2 summarizes its body plus the level 3 summaries,
        level 1 summarizes everything beneath it. One last prompt rolls up
        whatever remains into a summary placed at the top of the document.
        Headings of level 4 to 6 are treated as neither body nor boundary.
        """
        async with self._task(TaskType.SUMMARY) as run:
            doc.flatten()
            doc.remove_blocks([SUMMARY_BLOCK_ID])
            ids = list(reversed(editor_block_ids(doc)))
            if ids:
                add_block(doc, ids[-1], SUMMARY_PLACEHOLDER, "blue", "before", SUMMARY_BLOCK_ID)

            def intermediate(text: str) -> None:
                update_block_text(doc, SUMMARY_BLOCK_ID, INTERMEDIATE_SUMMARY + text, "blue")

            body = level2 = level1 = rollup = ""
            for block_id in ids:
                if run.cancelled:
                    break
                block = doc.get_block(block_id)
                if block is None:
                    continue
                if block["type"] != "heading":
                    body = _join(block_to_string(block), body)
                    continue

                level = block["props"].get("level")
                title = block_to_string(block)
                if level == 3 and body:
                    res = await self.send(summarize_prompt(body, title), TaskType.SUMMARY, intermediate)
                    level2 = _join(res or "", level2)
                    body = ""
                elif level == 2 and _join(body, level2):
                    res = await self.send(summarize_prompt(_join(body, level2), title), TaskType.SUMMARY, intermediate)
                    level1 = _join(res or "", level1)
                    body = level2 = ""
                elif level == 1 and _join(body, level2, level1):
                    res = await self.send(
                        summarize_prompt(_join(body, level2, level1), title), TaskType.SUMMARY, intermediate
                    )
                    rollup = _join(res or "", rollup)
                    body = level2 = level1 = ""

            remaining = _join(body, level2, level1, rollup)
            if remaining and not run.cancelled:
                res = await self.send(
                    summarize_prompt(remaining),
                    TaskType.SUMMARY,
                    lambda text: update_block_text(doc, SUMMARY_BLOCK_ID, text, "blue"),
                )
                if res:
                    doc.replace_blocks([SUMMARY_BLOCK_ID], markdown_to_blocks(res))

            return self._result(run, doc)

    async def develop(self, doc: BlockDocument) -> TaskResult:
        """Expand the document's ideas into prose appended after the last block."""
        async with self._task(TaskType.DEVELOP) as run:
            doc.flatten()
            doc.remove_blocks([DEVELOP_BLOCK_ID])
            ids = editor_block_ids(doc)
            if ids:
                add_block(doc, ids[-1], "", "blue", "after", DEVELOP_BLOCK_ID)

            text = _join(*(block_to_string(doc.get_block(block_id)) for block_id in ids))
            res = None
            if text:
                res = await self.send(
                    DEVELOP_PREFIX + text,
                    TaskType.DEVELOP,
                    lambda partial: update_block_text(doc, DEVELOP_BLOCK_ID, partial, "blue"),
                )
            if res:
                doc.replace_blocks([DEVELOP_BLOCK_ID], markdown_to_blocks(res))

            return self._result(run, doc)

    async def run_task(self, task: TaskType, doc: BlockDocument) -> TaskResult:
        handlers = {
            TaskType.TRANSLATION: self.translate,
            TaskType.CORRECTION: self.correct,
            TaskType.SUMMARY: self.summarize,
            TaskType.DEVELOP: self.develop,
        }
        return await handlers[task](doc)


