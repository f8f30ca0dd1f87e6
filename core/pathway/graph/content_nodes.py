"""
Content node executors.

These nodes carry the learning content of a pathway: the student's profile,
generated passages and vocabulary, prompts, feedback and celebrations. They
never branch; each returns ``Output``. Nodes that can use an AI provider fall
back to built-in content when none is configured or the provider fails.
"""

import logging
from typing import Any

from pathway.errors import NodeConfigurationError, ProviderError
from pathway.graph.ai_node import invoke_with_retry, render_template, template_names
from pathway.graph.flow_nodes import evaluate_condition, numeric_score
from pathway.graph.node import NodeSpec
from pathway.graph.outcome import ExecutionOutcome, Fail, Output
from pathway.graph.registry import NodeContext, merged_input, primary_input
from pathway.llm.provider import ProviderConfig

logger = logging.getLogger(__name__)

DEFAULT_ELPA_LEVEL = 3

PROFILE_FIELDS = (
    "studentId",
    "firstName",
    "gradeLevel",
    "nativeLanguage",
    "elpaLevel",
    "learningStyle",
    "interests",
)

MOCK_CONTENT: dict[int, tuple[str, list[str]]] = {
    1: (
        "The cat sat. The cat is big. The cat is soft.",
        ["cat", "sat", "big", "soft"],
    ),
    2: (
        "The cat sat on the mat. The cat likes to play. The cat is very soft.",
        ["cat", "mat", "play", "soft"],
    ),
    3: (
        "The farmer had many apples in his basket. He wanted to share them with his "
        "neighbor. He gave some apples away.",
        ["farmer", "apples", "basket", "neighbor", "share"],
    ),
    4: (
        "The industrious farmer harvested his apple crop early this morning. He decided "
        "to distribute some of his produce to nearby residents who might appreciate the "
        "fresh fruit.",
        ["industrious", "harvested", "distribute", "produce", "appreciate"],
    ),
    5: (
        "Agricultural practices in rural communities often emphasize the importance of "
        "neighborly cooperation. Local farmers frequently exchange surplus produce, "
        "fostering a sense of community while reducing food waste.",
        ["agricultural", "cooperation", "surplus", "fostering", "reducing"],
    ),
}

GLOSSARY: dict[str, str] = {
    "farmer": "A person who grows crops or raises animals",
    "neighbor": "A person who lives near you",
    "subtract": "Take away from a number",
    "basket": "A container for carrying things",
    "share": "Give part of something to others",
}

FEEDBACK_MESSAGES = (
    (80, "excellent", "Excellent work! You're doing amazing! 🌟"),
    (60, "good", "Good job! Keep practicing and you'll get even better! 💪"),
    (None, "needs-practice", "Nice try! Let's review this together and try again. You can do it! 🎯"),
)


def elpa_level(namespace: dict[str, Any]) -> int:
    value = namespace.get("elpaLevel")
    if isinstance(value, int | float) and not isinstance(value, bool):
        return int(value)
    return DEFAULT_ELPA_LEVEL


class InputExecutor:
    """Entry point: outputs ``data.variable``'s initial binding, or all initial bindings."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        variable = node.config_data().get("variable")
        if variable:
            return Output(ctx.read(variable))
        return Output(dict(ctx.run.initial_bindings))


class PassthroughExecutor:
    """Output and Process nodes: forward what arrived."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        if len(inputs) <= 1:
            return Output(primary_input(inputs))
        return Output(merged_input(inputs))


class StudentProfileExecutor:
    """
    Builds the student profile from node data, overlaid by the run's
    ``student`` / ``studentProfile`` binding and same-named bindings.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        namespace = ctx.namespace(inputs)
        data = node.config_data()
        profile: dict[str, Any] = {k: data[k] for k in PROFILE_FIELDS if k in data}
        for key in ("student", "studentProfile"):
            if isinstance(namespace.get(key), dict):
                profile.update(namespace[key])
        for key in PROFILE_FIELDS:
            if namespace.get(key) is not None:
                profile[key] = namespace[key]
        profile.setdefault("elpaLevel", DEFAULT_ELPA_LEVEL)
        profile.setdefault("interests", [])

        return Output(
            {
                "studentProfile": profile,
                "elpaLevel": profile["elpaLevel"],
                "nativeLanguage": profile.get("nativeLanguage"),
                "gradeLevel": profile.get("gradeLevel"),
                "interests": profile["interests"],
                "learningStyle": profile.get("learningStyle"),
            }
        )


class VariableExecutor:
    """Sets, increments or appends to a named run variable."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        name = data.get("variableName") or data.get("name") or "variable"
        operation = data.get("operation", "set")
        upstream = primary_input(inputs)
        if "value" in data:
            operand = data["value"]
        elif isinstance(upstream, dict) and "value" in upstream:
            operand = upstream["value"]
        else:
            operand = upstream
        current = ctx.read(name)

        if operation == "set":
            value = operand
        elif operation == "increment":
            step = data.get("step", 1)
            base = current if isinstance(current, int | float) and not isinstance(current, bool) else 0
            value = base + step
        elif operation == "append":
            value = [*(current if isinstance(current, list) else []), operand]
        elif operation == "get":
            value = current
        else:
            return Fail(NodeConfigurationError(node.id, f"unknown variable operation '{operation}'"))

        if operation != "get":
            ctx.write(name, value)
        return Output({"variableName": name, "value": value, "operation": operation})


class PromptTemplateExecutor:
    """Renders ``{{var}}`` placeholders and appends conditional sections."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        template = data.get("template", "")
        namespace = ctx.namespace(inputs)
        prompt = render_template(template, namespace)

        for section in data.get("conditionalSections") or []:
            condition = section.get("condition", "")
            if condition and evaluate_condition(condition, namespace, node.id):
                prompt += "\n" + render_template(section.get("content", ""), namespace)

        variables = {name: namespace.get(name.split(".")[0]) for name in template_names(template)}
        return Output({"prompt": prompt, "variables": variables})


class ContentGeneratorExecutor:
    """Generates a passage at the student's ELPA level; built-in passages when AI is unavailable."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        namespace = ctx.namespace(inputs)
        level = elpa_level(namespace)
        content_type = data.get("contentType", "passage")
        topic = namespace.get("topic") or data.get("topic") or "everyday activities"
        grade = namespace.get("gradeLevel") or "4"

        if ctx.llm is not None:
            system_prompt = (
                f"You are an ESL content generator for K-12 students. Generate {content_type} "
                f"content appropriate for Grade {grade}, written at ELPA level {level} "
                "(1=beginner, 5=advanced), culturally inclusive and engaging."
            )
            prompt = (
                f'Generate a {content_type} about "{topic}" for an ESL student. '
                "Keep it concise. Include 3-5 key vocabulary words at the end."
            )
            config = ProviderConfig.from_model_id(
                ctx.engine_config.default_model,
                temperature=data.get("temperature", 0.7),
                system_prompt=system_prompt,
            )
            try:
                response = await invoke_with_retry(ctx, config, prompt)
            except ProviderError as e:
                logger.warning(f"Content generation for '{node.id}' fell back to built-in text: {e}")
            else:
                content, vocabulary = self._split_vocabulary(response.text)
                return Output(
                    {
                        "content": content,
                        "vocabulary": vocabulary,
                        "readabilityScore": level * 2,
                        "adjustedLevel": level,
                        "generatedByAI": True,
                    }
                )

        content, vocabulary = MOCK_CONTENT.get(level, MOCK_CONTENT[DEFAULT_ELPA_LEVEL])
        return Output(
            {
                "content": content,
                "vocabulary": list(vocabulary),
                "readabilityScore": level * 2,
                "adjustedLevel": level,
                "generatedByAI": False,
            }
        )

    @staticmethod
    def _split_vocabulary(text: str) -> tuple[str, list[str]]:
        lines = text.split("\n")
        for index, line in enumerate(lines):
            lowered = line.lower()
            if "vocabulary" in lowered or "key words" in lowered:
                words = [
                    l.strip().lstrip("-•*0123456789. ").strip()
                    for l in lines[index + 1 :]
                    if l.strip()
                ]
                return "\n".join(lines[:index]).strip(), words[:5]
        return text, []


class VocabularyBuilderExecutor:
    """Turns upstream vocabulary (or the content's glossary words) into study entries."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        max_words = int(data.get("maxWords", 5))
        upstream = merged_input(inputs)
        content = upstream.get("content", "") if isinstance(upstream.get("content"), str) else ""

        words = [w for w in upstream.get("vocabulary") or [] if isinstance(w, str)]
        if not words:
            lowered = content.lower()
            words = [w for w in GLOSSARY if w in lowered] or list(GLOSSARY)

        entries = [{"word": w, "definition": GLOSSARY.get(w.lower(), "")} for w in words[:max_words]]
        return Output({"vocabulary": entries, "sourceContent": content})


class MergeExecutor:
    """Combines the values that arrived on several input ports."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        strategy = node.config_data().get("mergeStrategy", "concatenate")
        values = list(inputs.values())

        if strategy == "concatenate":
            merged: Any = []
            for value in values:
                merged.extend(value if isinstance(value, list) else [value])
        elif strategy == "select-best":
            scored = [(numeric_score(v), i) for i, v in enumerate(values)]
            scored = [(s, i) for s, i in scored if s is not None]
            merged = values[max(scored, key=lambda p: (p[0], -p[1]))[1]] if scored else merged_input(inputs)
        elif strategy == "aggregate":
            merged = merged_input(inputs)
        else:
            return Fail(NodeConfigurationError(node.id, f"unknown merge strategy '{strategy}'"))

        return Output({"merged": merged, "mergeStrategy": strategy, "inputCount": len(values)})


class FeedbackGeneratorExecutor:
    """Score-banded feedback (>= 80, >= 60, below); AI-written when ``useAI`` is set."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        namespace = ctx.namespace(inputs)
        score = numeric_score(primary_input(inputs))
        if score is None:
            score = numeric_score(namespace) or 0.0

        for threshold, level, message in FEEDBACK_MESSAGES:
            if threshold is None or score >= threshold:
                break

        if data.get("useAI") and ctx.llm is not None:
            prompt = (
                f"Write one or two encouraging sentences of feedback for an ESL student at "
                f"ELPA level {elpa_level(namespace)} who scored {score:g}/100."
            )
            config = ProviderConfig.from_model_id(ctx.engine_config.default_model, max_tokens=200)
            try:
                message = (await invoke_with_retry(ctx, config, prompt)).text.strip() or message
            except ProviderError as e:
                logger.warning(f"AI feedback for '{node.id}' unavailable: {e}")

        return Output(
            {
                "feedback": message,
                "message": message,
                "score": score,
                "level": level,
                "style": data.get("feedbackStyle", "encouraging"),
            }
        )


class CelebrationExecutor:
    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        message = render_template(
            data.get("message", "Congratulations! You've reached a milestone! 🎉"),
            ctx.namespace(inputs),
        )
        return Output(
            {
                "celebration": {
                    "type": data.get("celebrationType", "confetti"),
                    "message": message,
                    "soundEnabled": bool(data.get("soundEnabled", False)),
                    "animationEnabled": bool(data.get("animationEnabled", True)),
                },
                "trigger": True,
            }
        )
