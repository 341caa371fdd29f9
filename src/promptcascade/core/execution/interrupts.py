"""Interrupt handling between a strategy's first result and the final one.

Two interrupts are resolved here:

- ``question``: the model asked a clarifying question. The user is asked
  (up to ``max_questions`` times per node) and the call is continued with
  the answer. A dismissed question aborts the whole run.
- ``long_running``: the provider moved the response to the background.
  The BackgroundStrategy waits for it.
"""

from __future__ import annotations

import logging

from promptcascade.core.config import CascadeConfig
from promptcascade.core.errors import (
    CascadeCancelledError,
    MaxQuestionsExceededError,
    QuestionCancelledError,
)
from promptcascade.core.execution.strategies import (
    BackgroundStrategy,
    ExecutionRequest,
    StandardStrategy,
)
from promptcascade.core.protocols import CascadeHost, QuestionPrompt
from promptcascade.core.types import ExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_ANSWER_VARIABLE = "answer"


class InterruptHandler:
    """Resolves question and long_running interrupts for one result."""

    def __init__(
        self,
        standard: StandardStrategy,
        background: BackgroundStrategy,
        host: CascadeHost,
        config: CascadeConfig,
    ) -> None:
        self.standard = standard
        self.background = background
        self.host = host
        self.config = config

    def max_questions_for(self, request: ExecutionRequest) -> int:
        question_config = request.node.question_config
        if question_config and question_config.max_questions is not None:
            return question_config.max_questions
        return self.config.default_max_questions

    async def handle(self, request: ExecutionRequest, result: ExecutionResult) -> ExecutionResult:
        """Drive interrupts until the result is final.

        Raises:
            QuestionCancelledError: The user dismissed a question.
            CascadeCancelledError: The run was cancelled between questions.
            MaxQuestionsExceededError: Still asking after the cap.
        """
        result = await self._answer_questions(request, result)
        if result.is_long_running:
            result = await self.background.wait(request.node, result)
        return result

    async def _answer_questions(
        self, request: ExecutionRequest, result: ExecutionResult
    ) -> ExecutionResult:
        node = request.node
        max_questions = self.max_questions_for(request)
        variables = dict(request.variables)
        asked = 0

        while result.is_question and asked < max_questions:
            asked += 1
            data = result.interrupt_data
            variable_name = data.get("variable_name") or DEFAULT_ANSWER_VARIABLE
            logger.info(
                "question_interrupt: node_id=%s, variable=%s, attempt=%d/%d",
                node.id,
                variable_name,
                asked,
                max_questions,
            )

            answer = await self.host.show_question(
                QuestionPrompt(
                    question=data.get("question", ""),
                    variable_name=variable_name,
                    node_name=node.display_name,
                    max_questions=max_questions,
                    description=data.get("description"),
                    attempt=asked,
                )
            )
            if answer is None:
                raise QuestionCancelledError(f"Question dismissed on {node.display_name}")

            self.host.add_collected_question_var(variable_name, answer)
            variables[variable_name] = answer

            resumed = ExecutionRequest(
                node=node,
                message=request.message,
                variables=variables,
                context_id=request.context_id,
            )
            result = await self.standard.resume(resumed, result, variable_name, answer)

            if self.host.is_cancelled():
                raise CascadeCancelledError("Cascade cancelled while answering questions")

        if result.is_question:
            raise MaxQuestionsExceededError(
                f"Max questions exceeded ({max_questions}) on {node.display_name}",
                details={"node_id": node.id, "max_questions": max_questions},
            )
        return result
