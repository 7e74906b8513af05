"""System prompt assembly.

A system prompt is three parts: the persona (default or the caller's
custom system prompt), the response-format instruction, and the optional
collection-mode instruction.
"""

from __future__ import annotations

from archivist.api.schemas import CollectionMode, CollectionSettings, ResponseFormat

DEFAULT_SYSTEM_PROMPT = """\
You are Professor Archivist, a passionate historian and storyteller with encyclopedic knowledge.

Your character:
- You love history and can talk about the past for hours
- You speak vividly, with interesting details and anecdotes
- You like drawing parallels between historical events and the present day
- Now and then you quote great people or drop a Latin phrase

Use the available tools whenever they help answer precisely (for example the
current date and time), then add your own commentary to what they return.

Answer in the user's language, engagingly and informatively."""

FORMAT_INSTRUCTIONS: dict[ResponseFormat, str] = {
    ResponseFormat.PLAIN: (
        "Response format: plain text. Answer in simple, clear text without special formatting."
    ),
    ResponseFormat.JSON: """\
IMPORTANT: Always answer ONLY with JSON in the following shape (no markdown code fences):
{
  "topic": "short topic of the answer",
  "period": "historical period or year (if applicable)",
  "summary": "one or two sentence summary",
  "main_content": "main text of the answer with details and stories",
  "interesting_facts": ["fact 1", "fact 2"],
  "related_topics": ["related topic 1", "related topic 2"],
  "quote": "a quote on the topic (if any)"
}""",
    ResponseFormat.MARKDOWN: (
        "Response format: Markdown. Use headings (##), lists (- or 1.), **bold**, *italic* "
        "and > quotes.\nStructure the answer with headings for the different sections."
    ),
}

COLLECTION_MARKER = "DATA COLLECTION MODE"

_COLLECTION_FIELDS: dict[CollectionMode, list[str]] = {
    CollectionMode.TECHNICAL_SPEC: [
        "Project goal",
        "Functional requirements",
        "Non-functional requirements",
        "Constraints and assumptions",
        "Deadlines and milestones",
    ],
    CollectionMode.DESIGN_BRIEF: [
        "Product and brand",
        "Target audience",
        "Style and mood",
        "References",
        "Deliverables and deadlines",
    ],
    CollectionMode.PROJECT_SUMMARY: [
        "Problem and solution",
        "Target market",
        "Business model",
        "Team",
        "Current status and next steps",
    ],
}

_SOLVE_INSTRUCTIONS: dict[CollectionMode, str] = {
    CollectionMode.SOLVE_DIRECT: """\
MODE: DIRECT ANSWER
Answer the question DIRECTLY, without explanations or reasoning.
Give only the final result.""",
    CollectionMode.SOLVE_STEP_BY_STEP: """\
MODE: STEP-BY-STEP SOLUTION
Solve the problem STEP BY STEP:
1. Task analysis: restate what is given and what is asked
2. Plan: list the steps you will take
3. Solution: carry out each step, showing intermediate results
4. Check: verify the result
5. Answer: state the final answer clearly""",
    CollectionMode.SOLVE_EXPERT_PANEL: """\
MODE: EXPERT PANEL
Answer as a panel of three experts, each giving their own view:
- Logic Expert: reasons formally and checks consistency
- Practice Expert: focuses on real-world applicability
- Critic Expert: looks for weaknesses and risks
Finish with a consolidated conclusion the panel agrees on.""",
}


class PromptBuilder:
    """Renders the system prompt for a response format and collection mode."""

    def __init__(self, default_system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self._default_system_prompt = default_system_prompt

    def build(
        self,
        response_format: ResponseFormat = ResponseFormat.PLAIN,
        collection_settings: CollectionSettings | None = None,
    ) -> str:
        persona = self._default_system_prompt
        if collection_settings and collection_settings.custom_system_prompt.strip():
            persona = collection_settings.custom_system_prompt.strip()

        parts = [persona, FORMAT_INSTRUCTIONS[response_format]]
        collection = self.collection_instruction(collection_settings)
        if collection:
            parts.append(collection)
        return "\n\n".join(parts)

    @staticmethod
    def collection_instruction(settings: CollectionSettings | None) -> str | None:
        if settings is None or not settings.active:
            return None

        if settings.mode in _SOLVE_INSTRUCTIONS:
            return _SOLVE_INSTRUCTIONS[settings.mode]

        title = settings.result_title or "Result"
        if settings.mode == CollectionMode.CUSTOM:
            goal = settings.custom_prompt or "Collect the information the user needs."
            checklist = goal
        else:
            checklist = "\n".join(f"- {name}" for name in _COLLECTION_FIELDS[settings.mode])

        return f"""\
{COLLECTION_MARKER}
Your task is to gather the information for the document "{title}" through dialogue.
Ask the user one or two focused questions at a time and track what is still missing:
{checklist}

Once everything is collected, output the complete document under the heading "{title}"."""
