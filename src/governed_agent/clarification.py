"""Clarification Gate: collects answers to scoping questions and gates submission."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .models import AgentMode, GovernedTask, ScopeAnalysis

logger = logging.getLogger(__name__)


def requires_clarification(mode: AgentMode, analysis: Optional[ScopeAnalysis]) -> bool:
    """True when the scope analysis blocks progress until questions are answered."""
    if analysis is None or not analysis.has_questions:
        return False
    if mode is AgentMode.CLARIFY:
        return True
    return mode is AgentMode.SCOPE and not analysis.canProceed


class ClarificationGate:
    """Owner of the active question list and the answer map."""

    def __init__(self) -> None:
        self._questions: List[str] = []
        self._answers: Dict[str, str] = {}

    @property
    def active(self) -> bool:
        return len(self._questions) > 0

    @property
    def questions(self) -> List[str]:
        return list(self._questions)

    @property
    def answers(self) -> Dict[str, str]:
        return dict(self._answers)

    @property
    def can_submit(self) -> bool:
        if not self._questions:
            return False
        return all(self._answers.get(question, "").strip() for question in self._questions)

    @property
    def unanswered(self) -> List[str]:
        return [q for q in self._questions if not self._answers.get(q, "").strip()]

    def activate(self, questions: List[str]) -> None:
        """Show the given questions; answers to questions asked again are kept."""
        deduplicated = list(dict.fromkeys(questions))
        if deduplicated == self._questions:
            return
        self._questions = deduplicated
        self._answers = {q: a for q, a in self._answers.items() if q in self._questions}
        logger.info("Clarification requested", extra={"question_count": len(self._questions)})

    def deactivate(self) -> None:
        if self._questions:
            logger.debug("Clarification closed")
        self._questions = []
        self._answers = {}

    def set_answer(self, question: str, answer: str) -> None:
        if question not in self._questions:
            raise KeyError(question)
        self._answers[question] = answer

    def sync_with_snapshot(self, task: GovernedTask) -> None:
        """Match the gate to a freshly loaded snapshot.

        A snapshot is the complete task record, so questions it no longer asks are
        closed rather than kept open.
        """
        if requires_clarification(task.mode, task.scopeAnalysis):
            self.activate(task.scopeAnalysis.clarificationNeeded)
        else:
            self.deactivate()

    def sync_with_update(self, mode: AgentMode, analysis: Optional[ScopeAnalysis]) -> None:
        """Re-evaluate the gate from an update payload.

        Activates when the payload itself asks for clarification. Any other mode than
        CLARIFY closes the gate, except a SCOPE update without a scope analysis, which
        carries no new information about the questions.
        """
        if requires_clarification(mode, analysis):
            self.activate(analysis.clarificationNeeded)
            return
        if mode is AgentMode.CLARIFY:
            return
        if mode is AgentMode.SCOPE and analysis is None:
            return
        self.deactivate()
