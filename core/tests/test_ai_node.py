"""Tests for AI Model nodes: prompts, retries, fallback, streaming and AI routing."""

import asyncio

import pytest

from pathway.config import EngineConfig
from pathway.errors import ProviderError
from pathway.graph.ai_node import backoff_delay, render_template, resolve_model_id
from pathway.llm import LLMProvider, LLMResponse, MockLLMProvider, ProviderConfig
from pathway.runtime.context import RunStatus
from pathway.runtime.engine import WorkflowEngine
from pathway.runtime.event_bus import EventKind


def ai_graph(**config) -> dict:
    return {
        "id": "ai",
        "nodes": [{"id": "tutor", "type": "ai-model", "data": {"config": config}}],
        "edges": [],
    }


class SlowProvider(LLMProvider):
    async def invoke(self, config: ProviderConfig, prompt: str) -> LLMResponse:
        await asyncio.sleep(5)
        return LLMResponse(text="too late", model=config.model_id)


class TestHelpers:
    def test_render_template(self):
        variables = {"name": "Ana", "student": {"gradeLevel": "4"}}
        assert render_template("Hi {{name}}, grade {{ student.gradeLevel }}", variables) == "Hi Ana, grade 4"
        assert render_template("Hi {{missing}}!", variables) == "Hi !"

    def test_backoff_is_exponential_and_capped(self):
        config = EngineConfig(ai_backoff_base_seconds=0.5, ai_backoff_max_seconds=3.0)
        assert [backoff_delay(n, config) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]

    def test_resolve_model_id(self):
        assert resolve_model_id(None, None, "openai/gpt-4o-mini") == "openai/gpt-4o-mini"
        assert resolve_model_id("claude-3-haiku", "anthropic", "x/y") == "anthropic/claude-3-haiku"
        assert resolve_model_id("llama3", "local", "x/y") == "ollama/llama3"
        assert resolve_model_id("groq/llama3-8b", "openai", "x/y") == "groq/llama3-8b"


class TestAIModelNode:
    @pytest.mark.asyncio
    async def test_renders_prompt_and_returns_response(self, engine_config):
        llm = MockLLMProvider(responses=["Hello, Ana!"])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(
            ai_graph(prompt="Greet {{name}}", systemPrompt="You are a tutor.", temperature=0.5),
            {"name": "Ana"},
            timeout=2,
        )

        assert result.status == RunStatus.COMPLETED
        assert result.output["response"] == "Hello, Ana!"
        assert result.output["model"] == "openai/gpt-4o-mini"
        assert result.output["fallbackUsed"] is False
        call = llm.calls[0]
        assert call.prompt == "Greet Ana"
        assert call.system_prompt == "You are a tutor."
        assert call.temperature == 0.5

    @pytest.mark.asyncio
    async def test_prompt_from_upstream(self, engine_config):
        llm = MockLLMProvider()
        engine = WorkflowEngine(llm=llm, config=engine_config)
        document = {
            "nodes": [
                {"id": "template", "type": "prompt-template", "data": {"template": "Describe {{topic}}"}},
                {"id": "tutor", "type": "ai-model", "data": {}},
            ],
            "edges": [{"source": "template", "target": "tutor"}],
        }

        result = await engine.run(document, {"topic": "rain"}, timeout=2)

        assert result.success
        assert llm.calls[0].prompt == "Describe rain"
        assert llm.calls[0].temperature == engine_config.default_temperature

    @pytest.mark.asyncio
    async def test_missing_prompt_is_a_configuration_error(self, engine_config):
        engine = WorkflowEngine(llm=MockLLMProvider(), config=engine_config)
        result = await engine.run(ai_graph(), timeout=2)
        assert result.error_type == "NodeConfigurationError"

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, engine_config):
        llm = MockLLMProvider(responses=[ProviderError("rate limited"), "Recovered"])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        run_id = await engine.start_run(ai_graph(prompt="Hi"))
        result = await engine.wait_for_completion(run_id, timeout=2)

        assert result.output["response"] == "Recovered"
        assert llm.call_count == 2
        retries = [e for e in engine.event_bus.events(run_id) if e.kind == EventKind.NODE_RETRY]
        assert len(retries) == 1
        assert retries[0].payload["attempt"] == 1
        assert "rate limited" in retries[0].payload["error"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_report_the_last_error(self, engine_config):
        llm = MockLLMProvider(
            responses=[ProviderError("timeout"), ProviderError("timeout"), ProviderError("quota exceeded")]
        )
        engine = WorkflowEngine(llm=llm, config=engine_config)

        run_id = await engine.start_run(ai_graph(prompt="Hi"))
        result = await engine.wait_for_completion(run_id, timeout=2)

        assert result.status == RunStatus.FAILED
        assert result.error_type == "ProviderError"
        assert "quota exceeded" in result.error
        assert llm.call_count == 3
        retries = [e for e in engine.event_bus.events(run_id) if e.kind == EventKind.NODE_RETRY]
        assert [e.payload["attempt"] for e in retries] == [1, 2]

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self, engine_config):
        llm = MockLLMProvider(responses=[ProviderError("down"), "never used"])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(ai_graph(prompt="Hi", retryOnFailure=False), timeout=2)

        assert result.status == RunStatus.FAILED
        assert result.error_type == "ProviderError"
        assert llm.call_count == 1

    @pytest.mark.asyncio
    async def test_fallback_model_after_primary_exhausts_attempts(self, engine_config):
        llm = MockLLMProvider(default="From the fallback", failing_models=["openai/gpt-4o"])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(
            ai_graph(
                prompt="Hi",
                provider="openai",
                model="gpt-4o",
                fallbackModel="anthropic/claude-3-haiku",
            ),
            timeout=2,
        )

        assert result.success
        assert result.output["fallbackUsed"] is True
        assert result.output["model"] == "anthropic/claude-3-haiku"
        assert llm.models_called() == ["openai/gpt-4o"] * 3 + ["anthropic/claude-3-haiku"]

    @pytest.mark.asyncio
    async def test_all_models_failing_fails_the_node(self, engine_config):
        llm = MockLLMProvider(failing_models=["gpt-4o", "claude-3-haiku"])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(
            ai_graph(prompt="Hi", provider="openai", model="gpt-4o", fallbackModel="anthropic/claude-3-haiku"),
            timeout=2,
        )

        assert result.status == RunStatus.FAILED
        assert result.failed_node == "tutor"
        assert "All models failed" in result.error

    @pytest.mark.asyncio
    async def test_streaming_emits_partial_output(self, engine_config):
        llm = MockLLMProvider(default="Hello there, student!", chunk_size=5)
        engine = WorkflowEngine(llm=llm, config=engine_config)

        run_id = await engine.start_run(ai_graph(prompt="Hi", streamResponse=True))
        result = await engine.wait_for_completion(run_id, timeout=2)

        assert result.output["response"] == "Hello there, student!"
        assert result.output["streamed"] is True
        partial = [
            e for e in engine.event_bus.events(run_id) if e.kind == EventKind.NODE_PARTIAL_OUTPUT
        ]
        assert [e.payload["content"] for e in partial] == ["Hello", " ther", "e, st", "udent", "!"]
        assert partial[-1].payload["snapshot"] == "Hello there, student!"

    @pytest.mark.asyncio
    async def test_call_timeout(self):
        config = EngineConfig(
            default_model="openai/gpt-4o-mini",
            ai_retry_attempts=0,
            ai_call_timeout_seconds=0.05,
        )
        engine = WorkflowEngine(llm=SlowProvider(), config=config)

        result = await engine.run(ai_graph(prompt="Hi"), timeout=2)

        assert result.status == RunStatus.FAILED
        assert "did not answer within" in result.error

    @pytest.mark.asyncio
    async def test_no_provider_configured(self, engine_config):
        engine = WorkflowEngine(config=engine_config)
        result = await engine.run(ai_graph(prompt="Hi"), timeout=2)
        assert result.error_type == "ProviderError"


class TestAIRouting:
    """Routers with useAIForRouting ask the provider for a route id."""

    def _graph(self) -> dict:
        return {
            "id": "ai-routing",
            "nodes": [
                {
                    "id": "route",
                    "type": "router",
                    "data": {
                        "config": {
                            "routingCriteria": "ai-determined",
                            "routes": [
                                {"id": "visual", "name": "Picture story", "condition": "learningStyle == 'visual'"},
                                {"id": "visual-plus", "name": "Picture story with audio"},
                                {"id": "text", "name": "Reading passage", "condition": "true"},
                            ],
                        }
                    },
                },
                {"id": "a", "type": "output"},
                {"id": "b", "type": "output"},
                {"id": "c", "type": "output"},
            ],
            "edges": [
                {"source": "route", "sourceHandle": "visual", "target": "a"},
                {"source": "route", "sourceHandle": "visual-plus", "target": "b"},
                {"source": "route", "sourceHandle": "text", "target": "c"},
            ],
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "answer,expected_path",
        [
            ("visual", ["route", "a"]),
            ("I would choose visual-plus.", ["route", "b"]),
            ("TEXT", ["route", "c"]),
        ],
    )
    async def test_provider_picks_the_route(self, engine_config, answer, expected_path):
        llm = MockLLMProvider(responses=[answer])
        engine = WorkflowEngine(llm=llm, config=engine_config)

        result = await engine.run(self._graph(), {"learningStyle": "auditory"}, timeout=2)

        assert result.path == expected_path
        assert llm.calls[0].temperature == 0.0
        assert "Picture story with audio" in llm.calls[0].prompt

    @pytest.mark.asyncio
    async def test_unrecognised_answer_falls_back_to_conditions(self, engine_config):
        engine = WorkflowEngine(llm=MockLLMProvider(responses=["no idea"]), config=engine_config)
        result = await engine.run(self._graph(), {"learningStyle": "visual"}, timeout=2)
        assert result.path == ["route", "a"]

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_conditions(self, engine_config):
        llm = MockLLMProvider(failing_models=["openai/gpt-4o-mini"])
        engine = WorkflowEngine(llm=llm, config=engine_config)
        result = await engine.run(self._graph(), {"learningStyle": "kinesthetic"}, timeout=2)
        assert result.path == ["route", "c"]
