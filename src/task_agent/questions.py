"""Clarifying questions raised by the research phase.

The research artifact lists questions in a fixed markdown shape:

    ## Question 1: Which cache backend?
    **Options:**
    - a) Redis, already used in services/cache.py
    - b) In-process LRU
    - c) Something else (please specify)
    **Recommended:** a) Redis is already deployed

Extractors turn that text into Question objects. The markdown extractor is
deterministic; anything smarter (e.g. a language model) only has to satisfy
the QuestionExtractor protocol.
"""

import re
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class Question(BaseModel):
    id: str
    question: str
    options: list[str] = Field(default_factory=list)
    recommended_answer: Optional[str] = Field(
        default=None,
        description="Letter of the recommended option, e.g. 'a'"
    )
    justification: Optional[str] = None


class QuestionAnswer(BaseModel):
    question_id: str
    selected_option: str
    custom_input: Optional[str] = None


class QuestionsData(BaseModel):
    """Contents of questions.json."""
    questions: list[Question] = Field(default_factory=list)
    answered: bool = False
    answers: Optional[list[QuestionAnswer]] = None

    def answer_for(self, question_id: str) -> Optional[QuestionAnswer]:
        for answer in self.answers or []:
            if answer.question_id == question_id:
                return answer
        return None

    @property
    def is_answered(self) -> bool:
        return self.answered and self.answers is not None


@runtime_checkable
class QuestionExtractor(Protocol):
    """Turns free-form research text into typed questions."""

    async def extract_questions(self, research: str) -> list[Question]:
        ...

    async def extract_questions_with_answers(self, research: str) -> list[Question]:
        """Like extract_questions, with recommended_answer always filled in."""
        ...


QUESTION_RE = re.compile(r"^#{2,3}\s*Question\s+(\d+)\s*:\s*(.+?)\s*$", re.IGNORECASE)
OPTION_RE = re.compile(r"^\s*[-*]\s*([a-z])\)\s*(.+?)\s*$")
RECOMMENDED_RE = re.compile(r"^\s*\*\*Recommended:?\*\*:?\s*([a-z])\)?\s*[-:]?\s*(.*?)\s*$", re.IGNORECASE)
HEADING_RE = re.compile(r"^#{1,6}\s")


class MarkdownQuestionExtractor:
    """Parses `## Question N:` blocks from the research artifact."""

    def parse(self, research: str) -> list[Question]:
        questions: list[Question] = []
        current: Optional[Question] = None

        for line in research.splitlines():
            match = QUESTION_RE.match(line)
            if match:
                current = Question(id=f"q{match.group(1)}", question=match.group(2))
                questions.append(current)
                continue

            if current is None:
                continue
            if HEADING_RE.match(line):
                # Any other heading closes the question block
                current = None
                continue

            option = OPTION_RE.match(line)
            if option:
                current.options.append(f"{option.group(1)}) {option.group(2)}")
                continue

            recommended = RECOMMENDED_RE.match(line)
            if recommended:
                current.recommended_answer = recommended.group(1).lower()
                current.justification = recommended.group(2) or None

        return questions

    async def extract_questions(self, research: str) -> list[Question]:
        return self.parse(research)

    async def extract_questions_with_answers(self, research: str) -> list[Question]:
        questions = self.parse(research)
        for question in questions:
            if question.recommended_answer is None and question.options:
                question.recommended_answer = question.options[0].split(")", 1)[0]
                question.justification = question.justification or "First listed option"
        return questions


def auto_answer(questions: list[Question]) -> QuestionsData:
    """Answer every question with its recommended option."""
    answers = [
        QuestionAnswer(
            question_id=q.id,
            selected_option=q.recommended_answer or "",
            custom_input=q.justification,
        )
        for q in questions
    ]
    stripped = [Question(id=q.id, question=q.question, options=q.options) for q in questions]
    return QuestionsData(questions=stripped, answered=True, answers=answers)
