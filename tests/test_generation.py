"""
Unit tests for practice-question generation.
"""

import json
from unittest.mock import Mock

import pytest

from atlas_ai.core.generation import (
    GenerationError,
    QuestionGenerator,
    build_generation_prompt,
    parse_questions,
)
from atlas_ai.core.query import StructuredQuery


QUESTIONS_JSON = json.dumps([
    {
        "question": "Solve x^2 - 5x + 6 = 0",
        "options": ["x=2,3", "x=-2,-3", "x=1,6", "x=-1,-6"],
        "correctAnswer": "x=2,3",
        "explanation": "Factorise to (x-2)(x-3)",
    },
    {
        "question": "What is the discriminant of x^2 + 1?",
        "options": ["-4", "0", "4", "1"],
        "correct_answer": "-4",
    },
])


class TestParseQuestions:
    """Test parsing model replies into questions."""

    def test_parses_array_with_prose(self):
        """Test an array embedded in prose is parsed."""
        questions = parse_questions("Here are your questions:\n" + QUESTIONS_JSON)

        assert len(questions) == 2
        assert questions[0].correct_answer == "x=2,3"
        assert questions[0].options[0] == "x=2,3"
        assert questions[1].correct_answer == "-4"
        assert questions[1].explanation == ""

    def test_skips_malformed_items(self):
        """Test items without question text are dropped."""
        reply = json.dumps([{"options": []}, "text", {"question": "Define a prime."}])

        questions = parse_questions(reply)

        assert [q.question for q in questions] == ["Define a prime."]

    def test_no_array_raises(self):
        """Test a reply without a JSON array raises GenerationError."""
        with pytest.raises(GenerationError):
            parse_questions('{"question": "not a list"}')

    def test_deeply_nested_reply_raises_generation_error(self):
        """Test nesting too deep to decode is reported as unusable output."""
        with pytest.raises(GenerationError):
            parse_questions("[" * 200000 + "]" * 200000)

    def test_no_valid_questions_raises(self):
        """Test an array without usable items raises GenerationError."""
        with pytest.raises(GenerationError):
            parse_questions("[1, 2, 3]")


class TestQuestionGenerator:
    """Test the generator against a fake completer."""

    def setup_method(self):
        """Set up test environment."""
        self.completer = Mock()
        self.completer.complete.return_value = QUESTIONS_JSON
        self.generator = QuestionGenerator(self.completer)
        self.query = StructuredQuery("GCSE", "Edexcel", "Mathematics", "quadratic equations", "practiceQuestions")

    def test_generate(self):
        """Test the prompt is sent and the reply parsed."""
        questions = self.generator.generate(self.query, count=2)

        assert len(questions) == 2
        prompt = self.completer.complete.call_args[0][0]
        assert prompt.startswith("Generate 2 practice questions for GCSE Mathematics")
        assert "quadratic equations" in prompt
        assert "Edexcel" in prompt

    def test_invalid_count(self):
        """Test a non-positive count is rejected before the model is called."""
        with pytest.raises(ValueError):
            self.generator.generate(self.query, count=0)

        self.completer.complete.assert_not_called()

    def test_prompt_without_optional_fields(self):
        """Test the prompt reads naturally when fields are absent."""
        prompt = build_generation_prompt(StructuredQuery(subject="Biology"), 5)

        assert prompt.startswith("Generate 5 practice questions for GCSE/A-level Biology.")
        assert "exam board" not in prompt

    def test_question_to_dict(self):
        """Test questions serialize to plain dictionaries."""
        question = self.generator.generate(self.query)[0]

        assert question.to_dict() == {
            "question": "Solve x^2 - 5x + 6 = 0",
            "options": ["x=2,3", "x=-2,-3", "x=1,6", "x=-1,-6"],
            "correct_answer": "x=2,3",
            "explanation": "Factorise to (x-2)(x-3)",
        }
