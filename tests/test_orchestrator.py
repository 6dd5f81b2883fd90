"""Tests for the AI task orchestrator against a scripted in-process engine."""

import asyncio
import re

import pytest

from notes_ai_server.notes.blocks import (
    BlockDocument,
    block_to_string,
    new_block,
    styled_text,
)
from notes_ai_server.notes.diffing import annotate_correction
from notes_ai_server.notes.engines import EngineLoadError, InferenceEngine, InitProgressReport
from notes_ai_server.notes.orchestrator import (
    DEVELOP_BLOCK_ID,
    SUMMARY_BLOCK_ID,
    AITaskOrchestrator,
    OrchestratorBusyError,
    TaskState,
    TaskType,
)
from notes_ai_server.notes.prompts import (
    CORRECT_PREFIX,
    DEVELOP_PREFIX,
    GENERIC_ERROR,
    INPUT_TOO_LONG,
    LOADING_FROM_CACHE,
    TRANSLATE_PREFIX,
    summarize_prompt,
)


class FakeEngine(InferenceEngine):
    """Replies with ``respond(prompt)``, streamed one word at a time."""

    name = "fake"

    def __init__(self, respond=lambda prompt: "", fail_load=None, fail_stream=None, gate=None):
        super().__init__("fake-model")
        self.respond = respond
        self.fail_load = fail_load
        self.fail_stream = fail_stream
        self.gate = gate
        self.started = asyncio.Event() if gate is not None else None
        self.prompts = []

    async def _load(self):
        if self.fail_load is not None:
            raise self.fail_load

    async def stream_chat(self, messages):
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        if self.fail_stream is not None:
            raise self.fail_stream
        if self.gate is not None:
            self.started.set()
            await self.gate.wait()
        for piece in re.findall(r"\S+\s*", self.respond(prompt)):
            if self._interrupted:
                break
            self._message += piece
            yield piece
        self._stats = "decoding: fake"


def paragraph(block_id, text):
    return new_block(content=[styled_text(text)] if text else [], block_id=block_id)


def heading(block_id, text, level):
    return new_block("heading", [styled_text(text)], {"level": level}, block_id=block_id)


def make_orchestrator(engine, diff_design=1):
    calls = []

    def factory():
        calls.append(engine)
        return engine

    orch = AITaskOrchestrator(factory, diff_design=diff_design)
    return orch, calls


class TestSend:
    def test_empty_prompt_does_nothing(self):
        orch, calls = make_orchestrator(FakeEngine())

        assert asyncio.run(orch.send("", TaskType.DEVELOP, lambda _: None)) is None
        assert calls == []

    def test_streams_accumulated_text(self):
        engine = FakeEngine(lambda prompt: "Hello big world")
        orch, _ = make_orchestrator(engine)
        updates = []

        reply = asyncio.run(orch.send("hi", TaskType.DEVELOP, updates.append))

        assert reply == "Hello big world"
        assert updates == ["Hello ", "Hello big ", "Hello big world"]
        assert orch.state == TaskState.SETTLED
        assert orch.runtime_stats == "decoding: fake"

    def test_engine_built_once(self):
        orch, calls = make_orchestrator(FakeEngine(lambda prompt: "ok"))

        async def run():
            await orch.send("one", TaskType.DEVELOP, lambda _: None)
            await orch.send("two", TaskType.DEVELOP, lambda _: None)

        asyncio.run(run())

        assert len(calls) == 1
        assert orch.model_in_cache

    def test_async_engine_factory_is_awaited(self):
        engine = FakeEngine(lambda prompt: "ok")
        calls = []

        async def factory():
            await asyncio.sleep(0)
            calls.append(engine)
            return engine

        orch = AITaskOrchestrator(factory)

        reply = asyncio.run(orch.send("hi", TaskType.DEVELOP, lambda _: None))

        assert reply == "ok"
        assert orch.engine is engine
        assert calls == [engine]

    def test_async_engine_factory_for_cache_check(self):
        engine = FakeEngine()
        engine._loaded = True

        async def factory():
            return engine

        orch = AITaskOrchestrator(factory)

        assert asyncio.run(orch.is_model_cached()) is True
        assert orch.model_in_cache

    def test_too_long_prompt_sets_error(self):
        engine = FakeEngine(lambda prompt: "never")
        orch, _ = make_orchestrator(engine)

        reply = asyncio.run(orch.send("x" * 14001, TaskType.DEVELOP, lambda _: None))

        assert reply is None
        assert orch.error == INPUT_TOO_LONG
        assert engine.prompts == []

    def test_generation_failure_sets_generic_error(self):
        orch, _ = make_orchestrator(FakeEngine(fail_stream=RuntimeError("boom")))

        reply = asyncio.run(orch.send("hi", TaskType.DEVELOP, lambda _: None))

        assert reply is None
        assert orch.output == GENERIC_ERROR
        assert orch.error == GENERIC_ERROR

    def test_load_failure_propagates_with_reason(self):
        orch, _ = make_orchestrator(FakeEngine(fail_load=ConnectionError("server offline")))

        with pytest.raises(EngineLoadError, match="^Could not load the model because"):
            asyncio.run(orch.send("hi", TaskType.DEVELOP, lambda _: None))

        assert orch.output.startswith("Could not load the model because")
        assert orch.engine is None

    def test_load_failure_leaves_orchestrator_idle(self):
        orch, _ = make_orchestrator(FakeEngine(fail_load=ConnectionError("server offline")))
        doc = BlockDocument([paragraph("p", "idée")])

        with pytest.raises(EngineLoadError):
            asyncio.run(orch.develop(doc))

        assert not orch.busy
        assert orch.state == TaskState.IDLE


class TestProgress:
    def test_cache_progress_then_finish(self):
        orch, _ = make_orchestrator(FakeEngine())

        orch._on_progress(InitProgressReport(progress=0.5, text="Loading model from cache[1/2]"))
        assert orch.output == LOADING_FROM_CACHE
        assert orch.progress_percentage == 0.5

        orch._on_progress(InitProgressReport(progress=1.0, text="Finish loading"))
        assert orch.output == ""
        assert orch.progress == ""
        assert orch.progress_percentage == 0.0


class TestConcurrency:
    def test_second_task_rejected_then_stop(self):
        async def run():
            engine = FakeEngine(lambda prompt: "late reply", gate=asyncio.Event())
            orch, _ = make_orchestrator(engine)
            doc = BlockDocument([paragraph("p", "idée")])
            running = asyncio.create_task(orch.develop(doc))
            await engine.started.wait()

            assert orch.busy
            assert orch.status().current_task == TaskType.DEVELOP
            with pytest.raises(OrchestratorBusyError):
                await orch.translate(BlockDocument([paragraph("q", "autre")]))
            with pytest.raises(OrchestratorBusyError):
                orch.reset_engine()

            assert orch.stop()
            engine.gate.set()
            return orch, await running

        orch, result = asyncio.run(run())

        assert result.cancelled
        assert not orch.busy
        assert orch.state == TaskState.IDLE

    def test_stop_without_task(self):
        orch, _ = make_orchestrator(FakeEngine())
        assert not orch.stop()


class TestTranslate:
    def test_translates_each_text_block(self):
        replies = {"# Bonjour": "# Hello", "le monde": "the world"}
        engine = FakeEngine(lambda prompt: replies[prompt[len(TRANSLATE_PREFIX):]])
        orch, _ = make_orchestrator(engine)
        doc = BlockDocument([heading("h", "Bonjour", 1), paragraph("p", "le monde"), paragraph("e", "")])

        result = asyncio.run(orch.translate(doc))
        output = BlockDocument(result.output)

        assert engine.prompts == [TRANSLATE_PREFIX + "# Bonjour", TRANSLATE_PREFIX + "le monde"]
        assert block_to_string(output.get_block("h")) == "Hello"
        assert block_to_string(output.get_block("p")) == "the world"
        assert block_to_string(doc.get_block("p")) == "le monde"
        assert result.prompts_sent == 2
        assert not result.cancelled


class TestCorrect:
    def test_word_by_word_marks_both_sides(self):
        engine = FakeEngine(lambda prompt: "Je suis content")
        orch, _ = make_orchestrator(engine, diff_design=1)
        doc = BlockDocument([paragraph("p", "Je suis contant")])

        result = asyncio.run(orch.correct(doc))
        output = BlockDocument(result.output)

        assert engine.prompts == [CORRECT_PREFIX + "Je suis contant"]
        assert output.get_block("p")["content"][2] == styled_text("content ", backgroundColor="red")
        assert doc.get_block("p")["content"][2] == styled_text("contant ", backgroundColor="red")
        assert doc.get_block("p")["content"][0] == styled_text("Je ")

    def test_inline_annotation(self):
        orch, _ = make_orchestrator(FakeEngine(lambda prompt: "Je suis content"), diff_design=2)
        doc = BlockDocument([paragraph("p", "Je suis contant")])

        result = asyncio.run(orch.correct(doc))

        expected = annotate_correction("Je suis contant", "Je suis content", 2)
        assert BlockDocument(result.output).get_block("p")["content"] == expected
        assert block_to_string(doc.get_block("p")) == "Je suis contant"

    def test_single_block(self):
        orch, _ = make_orchestrator(FakeEngine(lambda prompt: "Bonne journée"), diff_design=2)
        source = BlockDocument([paragraph("a", "Bone journée"), paragraph("b", "untouched")])
        dest = source.copy()

        result = asyncio.run(orch.correct_single_block(source, dest, "a", design=3))

        assert result.prompts_sent == 1
        assert dest.get_block("a")["content"] == annotate_correction("Bone journée", "Bonne journée", 3)
        assert block_to_string(dest.get_block("b")) == "untouched"


class TestSummarize:
    def test_sections_fold_bottom_up(self):
        def respond(prompt):
            if "Partie" in prompt:
                return "S2"
            if "Titre" in prompt:
                return "S1"
            return "Final summary"

        engine = FakeEngine(respond)
        orch, _ = make_orchestrator(engine)
        doc = BlockDocument(
            [
                heading("h1", "Titre", 1),
                paragraph("intro", "intro"),
                heading("h2", "Partie", 2),
                paragraph("body", "corps"),
            ]
        )

        result = asyncio.run(orch.summarize(doc))

        assert engine.prompts == [
            summarize_prompt("corps", "Partie"),
            summarize_prompt("intro\nS2", "Titre"),
            summarize_prompt("S1"),
        ]
        assert result.prompts_sent == 3
        assert block_to_string(doc.blocks[0]) == "Final summary"
        assert doc.get_block(SUMMARY_BLOCK_ID) is None
        assert doc.blocks[1]["id"] == "h1"

    def test_without_headings_single_prompt(self):
        engine = FakeEngine(lambda prompt: "Short")
        orch, _ = make_orchestrator(engine)
        doc = BlockDocument([paragraph("a", "a"), paragraph("b", "b")])

        asyncio.run(orch.summarize(doc))

        assert engine.prompts == [summarize_prompt("a\nb")]
        assert [block_to_string(b) for b in doc.blocks] == ["Short", "a", "b"]

    def test_level_three_body_summarized(self):
        engine = FakeEngine(lambda prompt: "S3" if "Détail" in prompt else "Done")
        orch, _ = make_orchestrator(engine)
        doc = BlockDocument([heading("h3", "Détail", 3), paragraph("p", "texte")])

        asyncio.run(orch.summarize(doc))

        assert engine.prompts == [summarize_prompt("texte", "Détail"), summarize_prompt("S3")]


class TestDevelop:
    def test_appends_developed_text(self):
        engine = FakeEngine(lambda prompt: "## Texte\n\nParagraphe développé.")
        orch, _ = make_orchestrator(engine)
        doc = BlockDocument([paragraph("a", "idée une"), paragraph("b", "idée deux")])

        result = asyncio.run(orch.run_task(TaskType.DEVELOP, doc))

        assert engine.prompts == [DEVELOP_PREFIX + "idée une\nidée deux"]
        assert [block_to_string(b) for b in doc.blocks] == [
            "idée une",
            "idée deux",
            "Texte",
            "Paragraphe développé.",
        ]
        assert doc.get_block(DEVELOP_BLOCK_ID) is None
        assert result.task == TaskType.DEVELOP

    def test_empty_document_sends_nothing(self):
        engine = FakeEngine(lambda prompt: "unused")
        orch, _ = make_orchestrator(engine)
        doc = BlockDocument([paragraph("a", "")])

        result = asyncio.run(orch.develop(doc))

        assert engine.prompts == []
        assert result.prompts_sent == 0
        assert doc.ids() == ["a"]

    def test_generation_failure_reported_in_result(self):
        orch, _ = make_orchestrator(FakeEngine(fail_stream=RuntimeError("boom")))
        doc = BlockDocument([paragraph("a", "idée")])

        result = asyncio.run(orch.develop(doc))

        assert result.error == GENERIC_ERROR
        assert result.prompts_sent == 1
        assert orch.status().error == GENERIC_ERROR
        assert not orch.busy
