"""
Practice-question generation.

Builds a generation prompt from a resolved query and parses the model's
reply into question records.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from .completion import TextCompleter
from .payload import extract_payload
from .query import StructuredQuery


class GenerationError(Exception):
    """Raised when the model reply holds no usable questions."""


@dataclass(frozen=True)
class GeneratedQuestion:
    """A single multiple-choice practice question."""
    question: str
    options: List[str] = field(default_factory=list)
    correct_answer: str = ""
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_generation_prompt(query: StructuredQuery, count: int) -> str:
    """Compose the instruction sent to the model."""
    scope = f"{query.exam_type or 'GCSE/A-level'} {query.subject or 'subject'}"
    if query.topic:
        scope += f" on the topic of {query.topic}"
    if query.exam_board:
        scope += f" following the {query.exam_board} exam board specifications"

    return f"""Generate {count} practice questions for {scope}.

For each question, provide:
1. The question text
2. Four possible answers (for multiple choice)
3. The correct answer
4. A detailed explanation of the solution

Format the response as a JSON array of question objects with the following structure:
[
  {{
    "question": "Question text",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "correctAnswer": "Correct option",
    "explanation": "Explanation of the solution"
  }}
]"""


def parse_questions(reply: str) -> List[GeneratedQuestion]:
    """Parse the first JSON array in a model reply into questions.

    Raises:
        GenerationError: If no array is found or it holds no valid question
    """
    payload = extract_payload(reply, kind=list)
    if payload is None:
        raise GenerationError("Failed to generate practice questions: no JSON array in reply")

    questions = []
    for item in payload:
        if not isinstance(item, dict) or not isinstance(item.get("question"), str):
            continue
        options = item.get("options") or []
        questions.append(GeneratedQuestion(
            question=item["question"],
            options=[str(option) for option in options] if isinstance(options, list) else [],
            correct_answer=str(item.get("correctAnswer", item.get("correct_answer", ""))),
            explanation=str(item.get("explanation", "")),
        ))

    if not questions:
        raise GenerationError("Failed to generate practice questions: reply held no valid questions")
    return questions


class QuestionGenerator:
    """Generates practice questions through an injected language model."""

    def __init__(self, completer: TextCompleter):
        self.completer = completer

    def generate(self, query: StructuredQuery, count: int = 5) -> List[GeneratedQuestion]:
        """Generate ``count`` questions for a resolved query.

        Raises:
            ValueError: If count is not positive
            CompletionError: If the model cannot be reached
            GenerationError: If the reply is unusable
        """
        if count < 1:
            raise ValueError("count must be >= 1")
        reply = self.completer.complete(build_generation_prompt(query, count))
        return parse_questions(reply)
