"""Research answer generation and model-based evidence assessment.

Both calls are single-shot Claude Agent SDK queries without tools. The
model-based assessment is a secondary signal only: the grade shown to users
comes from src.services.grading.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from claude_agent_sdk import (
    AssistantMessage,
    CLIConnectionError,
    CLIJSONDecodeError,
    CLINotFoundError,
    ClaudeAgentOptions,
    ProcessError,
    ResultMessage,
    query,
)

from src.config import settings
from src.models.research import Document, ModelEvidenceAssessment

logger = logging.getLogger(__name__)

ANSWER_SYSTEM_PROMPT = """\
You are an expert in evidence-based wellness research. Your task is to \
provide accurate, concise answers based on the provided research context.

GUIDELINES:
- Always cite sources using inline numeric citations [1], [2], etc. The \
number is the bracketed position of the passage in the context.
- Be objective and highlight any limitations or conflicting evidence.
- Focus on actionable insights when appropriate.
- If evidence is insufficient, clearly state this.
- Use clear, accessible language while maintaining scientific accuracy.
- Structure your response logically with clear conclusions.

CONSTRAINTS:
- Only use the provided context. Do not fabricate studies or findings.
"""

GRADING_SYSTEM_PROMPT = """\
You are an expert in evidence grading for wellness research. Rate evidence \
strength as Strong, Moderate, Weak, or Insufficient.

STUDY QUALITY HIERARCHY (highest to lowest):
1. Meta-analyses and systematic reviews
2. Randomized controlled trials (RCTs)
3. Cohort studies
4. Case-control studies
5. Cross-sectional studies
6. Case studies

ADDITIONAL FACTORS:
- Sample sizes (larger is better)
- Recency (newer is better, within 5 years preferred)
- Conflicts of interest (fewer is better)
- Consistency of findings across studies

Provide a score from 0-100 and brief reasoning for your assessment.
"""


class GenerationError(Exception):
    """Raised when the language model call fails."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


def build_answer_prompt(query_text: str, context: str) -> str:
    return (
        f"Query: {query_text}\n\n"
        f"Research Context:\n{context}\n\n"
        "Please provide a comprehensive answer with proper citations. "
        "Focus on the most relevant and highest-quality evidence."
    )


def build_grading_prompt(documents: Sequence[Document], answer: str) -> str:
    lines = [
        f"- {doc.title} ({doc.study_type}, n={doc.sample_size or 'N/A'}, "
        f"{doc.publication_date.year})"
        + (
            f" [conflicts: {'; '.join(doc.conflicts_of_interest)}]"
            if doc.conflicts_of_interest
            else ""
        )
        for doc in documents
    ]
    return (
        "Documents Summary:\n"
        + "\n".join(lines)
        + f"\n\nGenerated Answer:\n{answer}\n\n"
        "Please grade the evidence strength and provide reasoning."
    )


async def _run_query(
    prompt: str, options: ClaudeAgentOptions, label: str
) -> ResultMessage:
    """Run a single agent query and return its successful ResultMessage."""
    result: ResultMessage | None = None
    try:
        async for message in query(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                logger.debug(
                    "%s AssistantMessage received (model=%s)", label, message.model
                )
            elif isinstance(message, ResultMessage):
                logger.info(
                    "%s ResultMessage: num_turns=%s duration=%sms cost=$%.4f "
                    "is_error=%s",
                    label,
                    message.num_turns,
                    message.duration_ms,
                    message.total_cost_usd or 0,
                    message.is_error,
                )
                if message.is_error:
                    raise GenerationError(
                        code="AGENT_ERROR",
                        message=message.result or "Agent returned an error",
                    )
                result = message
    except GenerationError:
        raise
    except CLINotFoundError:
        raise GenerationError(
            code="CLI_NOT_FOUND",
            message="Claude Code CLI not found. Ensure it is installed.",
        )
    except CLIConnectionError as e:
        if result is not None:
            logger.warning(
                "%s CLIConnectionError after result received (ignoring): %s",
                label,
                e,
            )
        else:
            raise GenerationError(
                code="CLI_CONNECTION_ERROR",
                message=f"Failed to connect to Claude CLI: {e}",
            )
    except BaseExceptionGroup as eg:
        # query() shutdown can surface a transport error from its task group
        # after the result has already been delivered.
        cli_errors = eg.subgroup(CLIConnectionError)
        if cli_errors and result is not None:
            logger.warning(
                "%s CLIConnectionError in task group after result (ignoring): %s",
                label,
                cli_errors.exceptions[0],
            )
        elif cli_errors:
            raise GenerationError(
                code="CLI_CONNECTION_ERROR",
                message=f"Failed to connect to Claude CLI: {cli_errors.exceptions[0]}",
            )
        else:
            raise
    except ProcessError as e:
        raise GenerationError(
            code="PROCESS_ERROR",
            message=f"Agent process failed: {e}",
        )
    except CLIJSONDecodeError as e:
        raise GenerationError(
            code="JSON_DECODE_ERROR",
            message=f"Failed to parse agent response: {e}",
        )

    if result is None:
        raise GenerationError(
            code="NO_RESULT",
            message="Agent did not return a result message",
        )
    return result


async def generate_answer(query_text: str, context: str) -> str:
    """Answer a research question from retrieved context, citing passages as [n]."""
    options = ClaudeAgentOptions(
        system_prompt=ANSWER_SYSTEM_PROMPT,
        model=settings.ai_model,
        max_turns=1,
        permission_mode="bypassPermissions",
    )
    logger.info(
        "Generating answer: model=%s query_chars=%d context_chars=%d",
        settings.ai_model,
        len(query_text),
        len(context),
    )
    message = await _run_query(
        build_answer_prompt(query_text, context), options, "Answer"
    )
    return message.result or ""


async def assess_evidence(
    documents: Sequence[Document], answer: str
) -> ModelEvidenceAssessment:
    """Ask the model for its own strength/score estimate of the documents."""
    options = ClaudeAgentOptions(
        system_prompt=GRADING_SYSTEM_PROMPT,
        model=settings.ai_model,
        output_format={
            "type": "json_schema",
            "schema": ModelEvidenceAssessment.model_json_schema(),
        },
        max_turns=2,
        permission_mode="bypassPermissions",
    )
    logger.info(
        "Requesting model evidence assessment for %d documents", len(documents)
    )
    message = await _run_query(
        build_grading_prompt(documents, answer), options, "Assessment"
    )
    if message.structured_output is None:
        raise GenerationError(
            code="NO_STRUCTURED_OUTPUT",
            message="Agent did not return a structured evidence assessment",
        )
    return ModelEvidenceAssessment.model_validate(message.structured_output)
