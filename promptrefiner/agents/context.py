"""Conversation context builder for outbound generation requests."""

import re
from dataclasses import dataclass
from typing import Any, Iterable

from promptrefiner.agents.stacks import get_best_practices, get_common_issues
from promptrefiner.agents.types import (
    APPROACHES,
    ConversationContext,
    GenerationRequest,
    QuestionKind,
)
from promptrefiner.utils.env_cfg import load_prompt

COMPLEXITY_KEYWORDS: tuple[str, ...] = (
    "api",
    "architecture",
    "authentication",
    "database",
    "deploy",
    "distributed",
    "integration",
    "microservice",
    "migration",
    "performance",
    "pipeline",
    "real-time",
    "scalab",
    "security",
    "testing",
)

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "status": {
            "type": "string",
            "enum": ["refining", "complete"],
            "description": (
                "Either 'refining' if you need to ask more questions, "
                "or 'complete' if you have enough information."
            ),
        },
        "questions": {
            "type": "array",
            "description": "Up to 3 question objects. Only include this if status is 'refining'.",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "type": {"type": "string", "enum": [k.value for k in QuestionKind]},
                    "question": {"type": "string"},
                    "answers": {
                        "type": "array",
                        "description": "2 to 4 concise suggested answers.",
                        "items": {"type": "string"},
                    },
                    "allowCustom": {"type": "boolean"},
                    "required": {"type": "boolean"},
                    "dependsOn": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["question", "answers"],
            },
        },
        "finalPrompts": {
            "type": "array",
            "description": "2 final, detailed prompts. Only include this if status is 'complete'.",
            "items": {"type": "string"},
        },
        "confidence": {"type": "integer", "minimum": 0, "maximum": 100},
        "suggestedApproach": {"type": "string", "enum": list(APPROACHES)},
        "nextSteps": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["status"],
}


@dataclass(frozen=True)
class ComplexityEstimate:
    """
    Heuristic estimate derived from the idea text and selected stacks.
    """

    level: str
    score: int
    estimated_rounds: int
    initial_confidence: int


def estimate_complexity(
    idea: str, stacks: Iterable[str], max_rounds: int = 5
) -> ComplexityEstimate:
    """
    Estimate how involved an idea is from keyword matches and stack count.

    The estimate only feeds the first-round instruction as a hint.

    Args:
        idea (str): The user's idea.
        stacks (Iterable[str]): Selected technology tags.
        max_rounds (int, optional): Upper bound for the estimated rounds. Defaults to 5.

    Returns:
        ComplexityEstimate: Level, raw score, estimated rounds and initial confidence.
    """
    lowered = idea.lower()
    hits = sum(1 for kw in COMPLEXITY_KEYWORDS if kw in lowered)
    stack_count = len(set(stacks))
    score = hits + stack_count

    if score <= 1:
        level, rounds = "basic", 2
    elif score <= 3:
        level, rounds = "detailed", 3
    else:
        level, rounds = "comprehensive", 4

    words = len(re.findall(r"\w+", idea))
    confidence = 60 + 5 * min(stack_count, 3) - 5 * hits
    if words < 5:
        confidence -= 15
    confidence = max(20, min(90, confidence))

    return ComplexityEstimate(
        level=level,
        score=score,
        estimated_rounds=max(1, min(max_rounds, rounds)),
        initial_confidence=confidence,
    )


class ConversationContextBuilder:
    """
    Builds the conversational payload and the matching system instruction.

    Output depends only on the context, so a retried attempt sends exactly the
    same request.
    """

    def __init__(self, base_instruction: str | None = None) -> None:
        """
        Initialize the ConversationContextBuilder.

        Args:
            base_instruction (str | None, optional): Base system instruction. Defaults to the bundled "system" prompt.
        """
        self.base_instruction = base_instruction or load_prompt("system")

    def build(self, context: ConversationContext, model: str) -> GenerationRequest:
        """
        Build the full request for one orchestration attempt.

        Args:
            context (ConversationContext): The current conversation context.
            model (str): The model identifier.

        Returns:
            GenerationRequest: The request to hand to the transport.
        """
        return GenerationRequest(
            model=model,
            contents=self.build_contents(context),
            system_instruction=self.build_system_instruction(context),
            response_schema=RESPONSE_SCHEMA,
        )

    def build_contents(self, context: ConversationContext) -> str:
        """
        Restate the idea followed by every prior turn.

        Args:
            context (ConversationContext): The current conversation context.

        Returns:
            str: The conversational text.
        """
        lines = [f'The user\'s initial idea is: "{context.idea}"', ""]
        if context.turns:
            lines.append("Here is the conversation so far:")
            for turn in context.turns:
                lines.append(f"[Round {turn.round}] ({turn.kind.value}) Q: {turn.question}")
                lines.append(f"A: {turn.answer}")
            lines.append("")
            lines.append("Based on this, what is the next step?")
        else:
            lines.append("This is the first step. What questions do you have?")
        return "\n".join(lines)

    def build_system_instruction(self, context: ConversationContext) -> str:
        """
        Combine the base instruction with round, stack, focus and output sections.

        Args:
            context (ConversationContext): The current conversation context.

        Returns:
            str: The system instruction.
        """
        sections = [
            self.base_instruction,
            self._round_section(context),
            self._stack_section(context),
            self._focus_section(context),
            self._output_section(context),
        ]
        return "\n\n".join(s for s in sections if s)

    def _round_section(self, context: ConversationContext) -> str:
        lines = [
            "## Refinement progress",
            f"This is round {context.round} of at most {context.max_rounds}.",
        ]
        if not context.turns:
            estimate = estimate_complexity(
                context.idea, context.stacks, max_rounds=context.max_rounds
            )
            lines.append(
                "This is the first round: ask 2-3 foundational questions that establish "
                "the goal, the audience and the main constraints."
            )
            lines.append(
                f"Estimated complexity: {estimate.level} (about {estimate.estimated_rounds} "
                f"rounds, initial confidence {estimate.initial_confidence}%). "
                "Treat this as a hint, not a limit."
            )
        elif context.round >= context.max_rounds:
            lines.append(
                "This is the final round. You MUST respond with status 'complete' "
                "and the final prompts."
            )
        else:
            lines.append(
                "Ask at most 3 follow-up questions that build on the previous answers "
                "and never repeat a question already answered, or finish with status "
                "'complete' if you have enough information."
            )
        return "\n".join(lines)

    def _stack_section(self, context: ConversationContext) -> str:
        if not context.stacks:
            return ""
        stacks = sorted(context.stacks)
        lines = [
            "## Technology stack",
            f"CRITICAL: The user is working with the following technology stack: "
            f"{', '.join(stacks)}. All questions and final prompts must be highly "
            "relevant to this specific stack.",
        ]
        practices = get_best_practices(stacks)
        if practices:
            lines.append("Best practices to reflect:")
            lines.extend(f"- {p}" for p in practices)
        issues = get_common_issues(stacks)
        if issues:
            lines.append("Common issues to anticipate:")
            lines.extend(f"- {i}" for i in issues)
        return "\n".join(lines)

    def _focus_section(self, context: ConversationContext) -> str:
        areas = context.enabled_focus_areas
        if not areas:
            return ""
        total = sum(fa.weight for fa in areas)
        lines = ["## Focus areas", "Weight questions and prompt content as follows:"]
        for fa in areas:
            lines.append(f"- {fa.name}: {round(fa.weight / total * 100)}%")
        return "\n".join(lines)

    def _output_section(self, context: ConversationContext) -> str:
        return "\n".join(
            [
                "## Output preferences",
                f"Target complexity: {context.complexity}. Tone: {context.output_style}.",
                "When you are ready to generate the final prompts (status: 'complete'), "
                f"you MUST format them as {context.output_format}.",
            ]
        )
