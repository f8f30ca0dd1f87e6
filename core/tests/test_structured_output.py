"""Tests for the Structured Output node: schema-built pydantic validation and fallbacks."""

import json

import pytest
from pydantic import ValidationError

from pathway.graph.structured_output import build_validator, validate_text
from pathway.llm import MockLLMProvider
from pathway.runtime.context import RunStatus
from pathway.runtime.engine import WorkflowEngine

WORD_SCHEMA = {
    "type": "object",
    "properties": {
        "word": {"type": "string"},
        "level": {"type": "integer"},
        "note": {"type": "string"},
    },
    "required": ["word", "level"],
}

ANSWERS_SCHEMA = {
    "type": "object",
    "properties": {
        "answers": {"type": "array", "items": {"type": "string"}},
        "mood": {"type": "string", "enum": ["happy", "sad"]},
    },
    "required": ["answers"],
}


def structured_graph(**config) -> dict:
    return {
        "id": "structured",
        "nodes": [{"id": "parse", "type": "structured-output", "data": {"config": config}}],
        "edges": [],
    }


class TestSchemaValidation:
    def test_required_and_optional_properties(self):
        validator = build_validator(WORD_SCHEMA)
        assert validate_text(validator, '{"word": "cat", "level": 2}') == {"word": "cat", "level": 2}
        with pytest.raises(ValidationError):
            validate_text(validator, '{"word": "cat"}')

    def test_types_are_strict(self):
        validator = build_validator(WORD_SCHEMA)
        with pytest.raises(ValidationError):
            validate_text(validator, '{"word": "cat", "level": "2"}')

    def test_enum_and_nested_array(self):
        validator = build_validator(json.dumps(ANSWERS_SCHEMA))
        data = validate_text(validator, '{"answers": ["a", "b"], "mood": "happy"}')
        assert data == {"answers": ["a", "b"], "mood": "happy"}
        with pytest.raises(ValidationError):
            validate_text(validator, '{"answers": ["a"], "mood": "bored"}')

    def test_bare_list_schema_and_code_fences(self):
        validator = build_validator([{"type": "number"}])
        assert validate_text(validator, "```json\n[1, 2.5]\n```") == [1, 2.5]

    def test_invalid_json_text(self):
        with pytest.raises(ValueError):
            validate_text(build_validator(WORD_SCHEMA), "the word is cat")


class TestStructuredOutputNode:
    @pytest.mark.asyncio
    async def test_validates_upstream_json_without_provider(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(
            structured_graph(schema=WORD_SCHEMA),
            {"response": '```json\n{"word": "cat", "level": 2}\n```'},
            timeout=2,
        )

        assert result.status == RunStatus.COMPLETED
        assert result.output["data"] == {"word": "cat", "level": 2}
        assert result.output["validationPassed"] is True
        assert result.output["attempts"] == 1

    @pytest.mark.asyncio
    async def test_model_answer_is_validated(self, engine_config):
        llm = MockLLMProvider(responses=['{"answers": ["red", "blue"], "mood": "happy"}'])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(
            structured_graph(schema=json.dumps(ANSWERS_SCHEMA)), {"prompt": "Name two colours"}, timeout=2
        )

        assert result.output["data"] == {"answers": ["red", "blue"], "mood": "happy"}
        assert result.output["raw"] == "Name two colours"
        assert llm.calls[0].prompt == "Name two colours"
        assert '"answers"' in llm.calls[0].system_prompt
        assert llm.calls[0].temperature == 0.0

    @pytest.mark.asyncio
    async def test_retry_sends_validation_errors_back(self, engine_config):
        llm = MockLLMProvider(responses=['{"word": "cat", "level": "two"}', '{"word": "cat", "level": 2}'])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(
            structured_graph(schema=WORD_SCHEMA, fallbackBehavior="retry"), {"prompt": "Describe cat"}, timeout=2
        )

        assert result.output["data"] == {"word": "cat", "level": 2}
        assert result.output["attempts"] == 2
        assert "validation errors" in llm.calls[1].prompt
        assert "level" in llm.calls[1].prompt

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, engine_config):
        llm = MockLLMProvider(default="not json at all")
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(
            structured_graph(schema=WORD_SCHEMA, fallbackBehavior="retry"), {"prompt": "Describe cat"}, timeout=2
        )

        assert result.status == RunStatus.COMPLETED
        assert result.output["data"] is None
        assert result.output["retriesExhausted"] is True
        assert result.output["maxRetries"] == 2
        assert llm.call_count == 2

    @pytest.mark.asyncio
    async def test_error_fallback(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(structured_graph(schema=WORD_SCHEMA), {"response": "cat, level two"}, timeout=2)

        assert result.output["data"] is None
        assert result.output["validationPassed"] is False
        assert result.output["error"]

    @pytest.mark.asyncio
    async def test_raw_text_fallback(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(
            structured_graph(schema=WORD_SCHEMA, fallbackBehavior="raw-text"),
            {"response": '{"word": 7, "level": 1}'},
            timeout=2,
        )

        assert result.output["data"] == '{"word": 7, "level": 1}'
        assert result.output["fallbackUsed"] == "raw-text"
        assert "word" in result.output["originalError"]

    @pytest.mark.asyncio
    async def test_validation_can_be_skipped(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(
            structured_graph(schema=WORD_SCHEMA, validateOutput=False), {"response": "free text"}, timeout=2
        )
        assert result.output == {
            "data": "free text",
            "raw": "free text",
            "validationPassed": False,
            "validationSkipped": True,
        }

    @pytest.mark.asyncio
    async def test_missing_and_invalid_schema(self, engine_config):
        engine = WorkflowEngine(config=engine_config)

        missing = await engine.run(structured_graph(), {"response": "{}"}, timeout=2)
        assert missing.output["error"] == "Structured Output node is missing a schema"

        invalid = await engine.run(structured_graph(schema="{not json"), {"response": "{}"}, timeout=2)
        assert invalid.output["error"] == "Invalid schema"
        assert invalid.output["schemaError"]

    @pytest.mark.asyncio
    async def test_no_upstream_text_fails_the_node(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(structured_graph(schema=WORD_SCHEMA), {}, timeout=2)

        assert result.status == RunStatus.FAILED
        assert result.failed_node == "parse"
        assert result.error_type == "ExecutionError"

    @pytest.mark.asyncio
    async def test_reads_ai_model_response(self, engine_config):
        llm = MockLLMProvider(responses=['{"word": "sun", "level": 1}', '{"word": "sun", "level": 1}'])
        engine = WorkflowEngine(llm=llm, config=engine_config)
        document = {
            "nodes": [
                {"id": "tutor", "type": "ai-model", "data": {"config": {"prompt": "Pick a word"}}},
                {"id": "parse", "type": "structured-output", "data": {"config": {"schema": WORD_SCHEMA}}},
            ],
            "edges": [{"source": "tutor", "target": "parse"}],
        }

        result = await engine.run(document, timeout=2)

        assert result.path == ["tutor", "parse"]
        assert result.output["raw"] == '{"word": "sun", "level": 1}'
        assert result.output["data"] == {"word": "sun", "level": 1}
