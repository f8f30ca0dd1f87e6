"""Tests for content nodes: profiles, passages, vocabulary, prompts, feedback and celebrations."""

import pytest

from pathway.graph.content_nodes import GLOSSARY, MOCK_CONTENT
from pathway.llm import MockLLMProvider
from pathway.runtime.context import RunStatus
from pathway.runtime.engine import WorkflowEngine


def single(node_type: str, **data) -> dict:
    return {"id": node_type, "nodes": [{"id": "node", "type": node_type, "data": data}], "edges": []}


async def run_single(engine_config, node_type: str, bindings: dict | None = None, llm=None, **data):
    engine = WorkflowEngine(llm=llm, config=engine_config)
    return await engine.run(single(node_type, **data), bindings or {}, timeout=2)


class TestStudentProfile:
    @pytest.mark.asyncio
    async def test_profile_overlays_bindings_on_node_data(self, engine_config):
        result = await run_single(
            engine_config,
            "student-profile",
            {"elpaLevel": 2, "student": {"nativeLanguage": "es"}},
            firstName="Ana",
            gradeLevel="3",
        )

        profile = result.output["studentProfile"]
        assert profile["firstName"] == "Ana"
        assert profile["nativeLanguage"] == "es"
        assert result.output["elpaLevel"] == 2
        assert result.output["gradeLevel"] == "3"

    @pytest.mark.asyncio
    async def test_defaults(self, engine_config):
        result = await run_single(engine_config, "student-profile")
        assert result.output["elpaLevel"] == 3
        assert result.output["interests"] == []
        assert result.output["learningStyle"] is None


class TestInputAndVariable:
    @pytest.mark.asyncio
    async def test_input_node_exposes_one_binding(self, engine_config):
        result = await run_single(engine_config, "input", {"student": {"id": 7}, "other": 1}, variable="student")
        assert result.output == {"id": 7}

    @pytest.mark.asyncio
    async def test_input_node_without_variable_exposes_all_bindings(self, engine_config):
        result = await run_single(engine_config, "trigger", {"a": 1, "b": 2})
        assert result.output == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_variable_operations(self, engine_config):
        document = {
            "id": "variables",
            "nodes": [
                {"id": "set", "type": "variable", "data": {"variableName": "count", "value": 5}},
                {"id": "bump", "type": "variable",
                 "data": {"variableName": "count", "operation": "increment", "step": 2}},
                {"id": "collect", "type": "variable",
                 "data": {"variableName": "words", "operation": "append", "value": "cat"}},
                {"id": "read", "type": "variable", "data": {"variableName": "count", "operation": "get"}},
            ],
            "edges": [
                {"source": "set", "target": "bump"},
                {"source": "bump", "target": "collect"},
                {"source": "collect", "target": "read"},
            ],
        }
        engine = WorkflowEngine(config=engine_config)

        result = await engine.run(document, {"words": ["dog"]}, timeout=2)

        assert result.output == {"variableName": "count", "value": 7, "operation": "get"}
        assert result.bindings["count"] == 7
        assert result.bindings["words"] == ["dog", "cat"]

    @pytest.mark.asyncio
    async def test_unknown_variable_operation_fails(self, engine_config):
        result = await run_single(engine_config, "variable", variableName="x", operation="multiply")
        assert result.status == RunStatus.FAILED
        assert result.error_type == "NodeConfigurationError"


class TestPromptTemplate:
    @pytest.mark.asyncio
    async def test_renders_template_and_conditional_sections(self, engine_config):
        result = await run_single(
            engine_config,
            "prompt-template",
            {"topic": "rain", "elpaLevel": 1},
            template="Write about {{topic}} for level {{elpaLevel}}.",
            conditionalSections=[
                {"condition": "elpaLevel <= 2", "content": "Use short sentences."},
                {"condition": "elpaLevel >= 4", "content": "Use rich vocabulary."},
            ],
        )

        assert result.output["prompt"] == "Write about rain for level 1.\nUse short sentences."
        assert result.output["variables"] == {"topic": "rain", "elpaLevel": 1}


class TestContentGenerator:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("level", [1, 2, 5])
    async def test_built_in_passage_per_level(self, engine_config, level):
        result = await run_single(engine_config, "content-generator", {"elpaLevel": level})

        content, vocabulary = MOCK_CONTENT[level]
        assert result.output["content"] == content
        assert result.output["vocabulary"] == vocabulary
        assert result.output["readabilityScore"] == level * 2
        assert result.output["generatedByAI"] is False

    @pytest.mark.asyncio
    async def test_unknown_level_uses_default_passage(self, engine_config):
        result = await run_single(engine_config, "content-generator", {"elpaLevel": 9})
        assert result.output["content"] == MOCK_CONTENT[3][0]

    @pytest.mark.asyncio
    async def test_ai_passage_splits_vocabulary(self, engine_config):
        llm = MockLLMProvider(responses=["It rained all day.\n\nVocabulary:\n- rain\n2. cloud\n"])
        result = await run_single(engine_config, "content-generator", {"elpaLevel": 2, "topic": "rain"}, llm=llm)

        assert result.output["content"] == "It rained all day."
        assert result.output["vocabulary"] == ["rain", "cloud"]
        assert result.output["generatedByAI"] is True
        assert "ELPA level 2" in llm.calls[0].system_prompt
        assert '"rain"' in llm.calls[0].prompt

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_built_in_passage(self, engine_config):
        llm = MockLLMProvider(failing_models=["openai/gpt-4o-mini"])
        result = await run_single(engine_config, "content-generator", {"elpaLevel": 1}, llm=llm)

        assert result.status == RunStatus.COMPLETED
        assert result.output["generatedByAI"] is False
        assert result.output["content"] == MOCK_CONTENT[1][0]


class TestVocabularyBuilder:
    @pytest.mark.asyncio
    async def test_words_found_in_content(self, engine_config):
        result = await run_single(
            engine_config,
            "vocabulary-builder",
            {"content": "The farmer shared his basket with a neighbor."},
        )

        words = [entry["word"] for entry in result.output["vocabulary"]]
        assert words == ["farmer", "neighbor", "basket", "share"]
        assert result.output["vocabulary"][0]["definition"] == GLOSSARY["farmer"]

    @pytest.mark.asyncio
    async def test_upstream_vocabulary_is_capped(self, engine_config):
        result = await run_single(
            engine_config, "vocabulary-builder", {"vocabulary": ["a", "b", "c", "d"]}, maxWords=2
        )
        assert result.output["vocabulary"] == [
            {"word": "a", "definition": ""},
            {"word": "b", "definition": ""},
        ]


class TestMerge:
    def _graph(self, strategy: str) -> dict:
        return {
            "id": "merge",
            "nodes": [
                {"id": "a", "type": "input", "data": {"variable": "a"}},
                {"id": "b", "type": "input", "data": {"variable": "b"}},
                {"id": "join", "type": "merge", "data": {"mergeStrategy": strategy}},
            ],
            "edges": [
                {"source": "a", "target": "join", "targetHandle": "first"},
                {"source": "b", "target": "join", "targetHandle": "second"},
            ],
        }

    @pytest.mark.asyncio
    async def test_concatenate(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(self._graph("concatenate"), {"a": [1, 2], "b": 3}, timeout=2)
        assert sorted(result.output["merged"]) == [1, 2, 3]
        assert result.output["inputCount"] == 2

    @pytest.mark.asyncio
    async def test_select_best(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        bindings = {"a": {"score": 40, "id": "a"}, "b": {"score": 90, "id": "b"}}
        result = await engine.run(self._graph("select-best"), bindings, timeout=2)
        assert result.output["merged"] == {"score": 90, "id": "b"}

    @pytest.mark.asyncio
    async def test_aggregate(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(self._graph("aggregate"), {"a": {"x": 1}, "b": {"y": 2}}, timeout=2)
        assert result.output["merged"] == {"x": 1, "y": 2}

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(self._graph("zip"), {"a": 1, "b": 2}, timeout=2)
        assert result.error_type == "NodeConfigurationError"


class TestFeedbackAndCelebration:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "score,level",
        [(95, "excellent"), (80, "excellent"), (65, "good"), (59, "needs-practice")],
    )
    async def test_feedback_bands(self, engine_config, score, level):
        result = await run_single(engine_config, "feedback", {"score": score})
        assert result.output["level"] == level
        assert result.output["score"] == score
        assert result.output["style"] == "encouraging"

    @pytest.mark.asyncio
    async def test_ai_feedback(self, engine_config):
        llm = MockLLMProvider(responses=["  Wonderful reading today!  "])
        result = await run_single(engine_config, "feedback-generator", {"score": 72}, llm=llm, useAI=True)
        assert result.output["feedback"] == "Wonderful reading today!"
        assert "72/100" in llm.calls[0].prompt

    @pytest.mark.asyncio
    async def test_celebration(self, engine_config):
        result = await run_single(
            engine_config, "celebration", {"firstName": "Ana"}, message="Well done, {{firstName}}!"
        )
        assert result.output == {
            "celebration": {
                "type": "confetti",
                "message": "Well done, Ana!",
                "soundEnabled": False,
                "animationEnabled": True,
            },
            "trigger": True,
        }
