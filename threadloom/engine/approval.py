"""Plan approval and clarification-question state.

Pure state: the engine facade does the I/O (writing frames, recording
messages) and calls into ApprovalState around it, so a failed write can
be rolled back with restore_proposed() or by leaving questions pending.

Plan states:
    none -> plan-proposed            (PlanProposed event)
    plan-proposed -> plan-approved   (approve / execute in new session)
    plan-approved -> none            (frames delivered)
    plan-approved -> plan-proposed   (delivery failed)
    plan-proposed -> plan-rejected -> none
    plan-proposed -> none            (user sent a normal message)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import IncompleteAnswerError, InvalidStateError
from .models import PlanState, Question, QuestionOption

logger = logging.getLogger(__name__)


@dataclass
class ApprovalState:
    """Approval protocol state of one thread."""
    thread_id: str
    plan_state: PlanState = PlanState.NONE
    plan: str = ""
    questions: list[Question] = field(default_factory=list)

    # ── Plans ──

    def propose(self, plan: str) -> None:
        self.plan_state = PlanState.PROPOSED
        self.plan = plan
        logger.info("Thread %s: plan proposed (%d chars)", self.thread_id, len(plan))

    def _require_proposed(self, action: str) -> None:
        if self.plan_state != PlanState.PROPOSED:
            raise InvalidStateError(
                self.thread_id, f"cannot {action}: plan state is {self.plan_state.value}",
            )

    def begin_approve(self) -> str:
        """plan-proposed -> plan-approved. Returns the plan text."""
        self._require_proposed("approve plan")
        self.plan_state = PlanState.APPROVED
        return self.plan

    def finish(self) -> None:
        """Back to none once the decision reached the assistant."""
        self.plan_state = PlanState.NONE
        self.plan = ""

    def restore_proposed(self) -> None:
        """Undo begin_approve() after a failed delivery."""
        if self.plan_state == PlanState.APPROVED:
            self.plan_state = PlanState.PROPOSED

    def begin_reject(self) -> None:
        self._require_proposed("reject plan")
        self.plan_state = PlanState.REJECTED

    def discard_for_send(self) -> bool:
        """A normal message supersedes a proposed plan. True if one was dropped."""
        if self.plan_state != PlanState.PROPOSED:
            return False
        logger.info("Thread %s: proposed plan discarded by new message", self.thread_id)
        self.finish()
        return True

    # ── Questions ──

    def raise_questions(self, questions: list[Question]) -> None:
        # A later batch replaces anything still pending.
        self.questions = list(questions)

    @property
    def awaiting_answer(self) -> bool:
        return bool(self.questions)

    def resolve_answers(self, answers: dict[str, str]) -> dict[str, str]:
        """Match answers to pending questions, keyed by question id.

        An answer may be keyed by the question's id or its prompt text.
        Blank answers count as missing.
        """
        if not self.questions:
            raise InvalidStateError(self.thread_id, "no questions are pending")
        resolved: dict[str, str] = {}
        missing: list[str] = []
        for question in self.questions:
            answer = answers.get(question.id)
            if answer is None or not str(answer).strip():
                answer = answers.get(question.prompt)
            if answer is None or not str(answer).strip():
                missing.append(question.prompt or question.id)
                continue
            resolved[question.id] = str(answer).strip()
        if missing:
            raise IncompleteAnswerError(self.thread_id, missing)
        return resolved

    def clear_questions(self) -> None:
        self.questions = []

    def reset(self) -> None:
        """Forget everything (session switch or process restart)."""
        self.finish()
        self.clear_questions()


def questions_from_payload(thread_id: str, raw: list[dict[str, Any]]) -> list[Question]:
    """Build Question models from a QuestionRaised payload."""
    questions = []
    for item in raw:
        prompt = str(item.get("question", "")).strip()
        if not prompt:
            continue
        questions.append(Question(
            thread_id=thread_id,
            prompt=prompt,
            header=str(item.get("header", "")),
            options=[
                QuestionOption(label=str(o.get("label", "")), description=str(o.get("description", "")))
                for o in item.get("options") or []
                if isinstance(o, dict)
            ],
            multi_select=bool(item.get("multi_select", False)),
        ))
    return questions


def format_qa_message(questions: list[Question], answers: dict[str, str]) -> str:
    """Transcript entry for an answered batch: "**header**: question\\n→ answer"."""
    blocks = []
    for q in questions:
        label = f"**{q.header}**: {q.prompt}" if q.header else q.prompt
        blocks.append(f"{label}\n→ {answers.get(q.id, '')}")
    return "\n\n".join(blocks)


class ApprovalBook:
    """ApprovalState per thread, created on demand."""

    def __init__(self) -> None:
        self._states: dict[str, ApprovalState] = {}

    def get(self, thread_id: str) -> ApprovalState:
        state = self._states.get(thread_id)
        if state is None:
            state = ApprovalState(thread_id)
            self._states[thread_id] = state
        return state

    def drop(self, thread_id: str) -> None:
        self._states.pop(thread_id, None)
