"""
Learning and assessment node executors.

Curriculum selection, scaffolding by ELPA level, comprehension checks and
progress tracking. A comprehension check suspends the run until the student
answers, then scores the answers on resume.
"""

import logging
import math
import re
from typing import Any

from pathway.errors import InvalidHumanInput, ProviderError
from pathway.graph.ai_node import invoke_with_retry
from pathway.graph.content_nodes import elpa_level
from pathway.graph.hitl import HumanInputRequest
from pathway.graph.node import HumanInputType, NodeSpec, RequiredRole
from pathway.graph.outcome import ExecutionOutcome, Output, Suspend
from pathway.graph.registry import NodeContext, merged_input
from pathway.llm.provider import ProviderConfig

logger = logging.getLogger(__name__)

SCAFFOLDING_BY_LEVEL: dict[int, tuple[list[str], str]] = {
    1: (["visual-supports", "l1-translation", "single-words", "realia"], "full"),
    2: (["sentence-frames", "word-banks", "graphic-organizers"], "high"),
    3: (["text-structures", "academic-vocabulary", "scaffolded-writing"], "moderate"),
    4: (["critical-thinking", "independent-strategies"], "light"),
    5: (["advanced-analysis", "synthesis", "peer-review"], "minimal"),
}

SCAFFOLD_TYPES: dict[str, list[str] | None] = {
    "simplify": ["Simplified vocabulary", "Shorter sentences", "Basic grammar structures"],
    "add-supports": None,  # the level's own scaffolding elements
    "enrich": ["Extended vocabulary", "Complex sentence patterns", "Academic language"],
}

MOCK_QUESTIONS = (
    {"id": "q1", "question": "What is the main idea of this passage?", "type": "main-idea"},
    {"id": "q2", "question": "What happened first in the story?", "type": "sequence"},
    {"id": "q3", "question": "What does the word 'subtract' mean?", "type": "vocabulary"},
    {"id": "q4", "question": "Why do you think this happened?", "type": "inference"},
    {"id": "q5", "question": "How did the character feel?", "type": "inference"},
)

_QUESTION_LINE = re.compile(r"^Q(\d+):\s*(.+)")
_TYPE_LINE = re.compile(r"^Type:\s*(.+)", re.IGNORECASE)
_ANSWER_LINE = re.compile(r"^Answer:\s*(.+)", re.IGNORECASE)


def scaffolding_for_level(level: int) -> dict[str, Any]:
    elements, intensity = SCAFFOLDING_BY_LEVEL.get(level, SCAFFOLDING_BY_LEVEL[3])
    return {"elements": list(elements), "intensity": intensity}


class CurriculumSelectorExecutor:
    """Selects curriculum outcomes from node configuration and the student's grade."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        namespace = ctx.namespace(inputs)
        return Output(
            {
                "subjectArea": data.get("subjectArea") or "ela",
                "gradeLevel": namespace.get("gradeLevel") or data.get("gradeLevel"),
                "outcomes": list(data.get("specificOutcomes") or []),
                "strand": data.get("strand") or "",
            }
        )


class ScaffoldedContentExecutor:
    """Attaches the level's scaffolding to upstream content."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        namespace = ctx.namespace(inputs)
        level = elpa_level(namespace)
        scaffolding = scaffolding_for_level(level)
        return Output(
            {
                "content": merged_input(inputs).get("content") or "",
                "scaffolding": scaffolding,
                "adjustedLevel": level,
                "supports": scaffolding["elements"],
            }
        )


class ScaffoldingExecutor:
    """Simplifies, supports or enriches content per ``scaffoldingType``."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        scaffolding_type = node.config_data().get("scaffoldingType") or "add-supports"
        level = elpa_level(ctx.namespace(inputs))
        scaffolding = scaffolding_for_level(level)
        scaffolds = SCAFFOLD_TYPES.get(scaffolding_type) or scaffolding["elements"]
        return Output(
            {
                "content": merged_input(inputs).get("content"),
                "scaffoldingType": scaffolding_type,
                "scaffolds": list(scaffolds),
                "intensity": scaffolding["intensity"],
                "adjustedForLevel": level,
            }
        )


class ProgressTrackerExecutor:
    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        upstream = merged_input(inputs)
        return Output(
            {
                "progress": {
                    "questionsAnswered": upstream.get("questionsAnswered") or 0,
                    "correctAnswers": upstream.get("correctAnswers") or 0,
                    "timeSpent": upstream.get("timeSpent") or 0,
                    "vocabularyLearned": upstream.get("vocabularyLearned") or [],
                },
                "report": "Student progress tracked successfully",
                "persistData": node.config_data().get("persistData", True) is not False,
            }
        )


# ---------------------------------------------------------------------------
# Comprehension check
# ---------------------------------------------------------------------------


def parse_questions(text: str) -> list[dict[str, Any]]:
    """Parse ``Q1: ... / Type: ... / Answer: ...`` blocks from a model response."""
    questions: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    for raw in text.split("\n"):
        line = raw.strip()
        match = _QUESTION_LINE.match(line)
        if match:
            current = {"id": f"q{match.group(1)}", "question": match.group(2).strip(), "type": "literal"}
            questions.append(current)
        elif current is not None:
            if kind := _TYPE_LINE.match(line):
                current["type"] = kind.group(1).strip().lower()
            elif answer := _ANSWER_LINE.match(line):
                current["answer"] = answer.group(1).strip()
    return questions


def normalize_responses(node_id: str, value: Any) -> dict[str, str]:
    """
    Student answers keyed by question id.

    Accepts ``[{questionId, answer}, ...]``, ``{questionId: answer}`` or
    ``{"responses": <either form>}``.

    Raises:
        InvalidHumanInput: the value has neither shape
    """
    if isinstance(value, dict) and "responses" in value:
        value = value["responses"]
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list) and all(isinstance(r, dict) and "questionId" in r for r in value):
        return {str(r["questionId"]): str(r.get("answer") or "") for r in value}
    raise InvalidHumanInput(node_id, f"expected answers keyed by question id, got {value!r}")


def comprehension_feedback(score: int, level: int) -> str:
    if score >= 90:
        return "Excellent work! You understood the text very well! 🌟"
    if score >= 70:
        return "Good job! You understood most of the text. Keep practicing! 👍"
    if score >= 50:
        if level <= 2:
            return "Nice try! Let's look at the text together to understand it better."
        return "You got some answers right! Review the text and try again."
    if level <= 2:
        return "It's okay! Reading takes practice. Let's try with some help."
    return "Don't worry! Let's go through the text again together."


def evaluate_answers(
    questions: list[dict[str, Any]], answers: dict[str, str], level: int
) -> dict[str, Any]:
    """
    Score answers against each question's expected answer.

    An answer is correct when, case-insensitively, it equals, contains or is
    contained in the expected answer. Empty answers (or questions without an
    expected answer) never count.
    """
    results = []
    correct = 0
    for question in questions:
        question_id = str(question.get("id", ""))
        given = answers.get(question_id, "").strip().lower()
        expected = str(question.get("answer") or "").strip()
        is_correct = bool(given and expected) and (
            given == expected.lower() or given in expected.lower() or expected.lower() in given
        )
        correct += is_correct
        results.append(
            {
                "questionId": question_id,
                "isCorrect": is_correct,
                "feedback": "Correct! Great job!" if is_correct else f"The answer was: {expected}",
            }
        )

    score = math.floor(correct / len(questions) * 100 + 0.5) if questions else 0
    return {
        "score": score,
        "correctAnswers": correct,
        "questionsAnswered": len(questions),
        "questionResults": results,
        "feedback": comprehension_feedback(score, level),
    }


class ComprehensionCheckExecutor:
    """
    Asks comprehension questions about upstream content.

    With upstream ``questions`` and ``responses`` the node scores them
    immediately. Otherwise it writes questions (AI-generated when a provider
    is configured, built-in otherwise), suspends for the student's answers and
    outputs the scored result when they arrive.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        question_count = int(data.get("questionCount") or 3)
        pass_threshold = float(data.get("passThreshold") or 70)
        namespace = ctx.namespace(inputs)
        level = elpa_level(namespace)
        upstream = merged_input(inputs)
        content = upstream.get("content") if isinstance(upstream.get("content"), str) else ""

        def scored(questions: list[dict[str, Any]], answers: dict[str, str]) -> dict[str, Any]:
            result = evaluate_answers(questions, answers, level)
            result.update(
                passThreshold=pass_threshold,
                passed=result["score"] >= pass_threshold,
                content=content,
            )
            return result

        if isinstance(upstream.get("questions"), list) and "responses" in upstream:
            answers = normalize_responses(node.id, upstream["responses"])
            return Output(scored(upstream["questions"], answers))

        questions = await self._write_questions(node, ctx, content, level, question_count)
        generated = questions is not None
        if questions is None:
            questions = [dict(q) for q in MOCK_QUESTIONS[:question_count]]

        prompt = f"Answer {len(questions)} questions about the passage"
        request = HumanInputRequest(
            node_id=node.id,
            prompt=prompt,
            input_type=HumanInputType.TEXT_INPUT,
            required_role=RequiredRole.STUDENT,
            context=content,
        ).to_dict()
        request["questions"] = [{k: v for k, v in q.items() if k != "answer"} for q in questions]
        request["passThreshold"] = pass_threshold
        request["generatedByAI"] = generated

        return Suspend(
            reason=prompt,
            request=request,
            complete=lambda value: scored(questions, normalize_responses(node.id, value)),
        )

    @staticmethod
    async def _write_questions(
        node: NodeSpec, ctx: NodeContext, content: str, level: int, count: int
    ) -> list[dict[str, Any]] | None:
        if ctx.llm is None:
            return None
        if level <= 2:
            guidance = "Create simple, literal questions with clear answer options."
        elif level == 3:
            guidance = "Include both literal and simple inferential questions."
        else:
            guidance = "Include inferential and analytical questions."
        config = ProviderConfig.from_model_id(
            ctx.engine_config.default_model,
            temperature=0.5,
            system_prompt=(
                "You are an ESL assessment creator. Generate reading comprehension "
                f"questions appropriate for ELPA Level {level} students. {guidance}"
            ),
        )
        prompt = (
            f'Create {count} comprehension questions for this text:\n\n"{content}"\n\n'
            "Format each question as:\nQ1: [question]\nType: [literal/inferential/vocabulary]\n"
            "Answer: [correct answer]"
        )
        try:
            response = await invoke_with_retry(ctx, config, prompt)
        except ProviderError as e:
            logger.warning(f"Question writing for '{node.id}' fell back to built-in questions: {e}")
            return None
        return parse_questions(response.text) or None
