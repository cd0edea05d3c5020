"""
Request pipelines behind the HTTP surface.

analyze():       files -> extract (concurrent) -> combine -> generate -> store
send_message():  message + stored analysis -> replay history -> chat -> append

Both commit state only after generation succeeds; any raised error leaves the
stores untouched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Tuple

from common.events import EventPublisher
from .aggregator import combine, has_content
from .errors import AggregateEmptyError, InputError
from .extractor import extract_all
from .llm import Generator
from .stores import AnalysisRecord, AnalysisStore, ConversationStore, utc_now

logger = logging.getLogger("analysis")
chat_logger = logging.getLogger("chat")


# -----------------------------------------------------------------------------
# Analysis
# -----------------------------------------------------------------------------
async def analyze(
    files: Sequence[Tuple[str, str]],
    *,
    store: AnalysisStore,
    generator: Generator,
    events: Optional[EventPublisher] = None,
) -> AnalysisRecord:
    """
    files: (stored path, original filename) pairs from the upload step.
    """
    if not files:
        raise InputError("Please upload at least one document", title="No files provided")

    logger.info("Analyzing %s document(s)", len(files))
    records = await extract_all(files)

    if not has_content(records):
        raise AggregateEmptyError(
            "Could not extract text from any of the uploaded documents",
            documents=[_outcome_dict(r.outcome()) for r in records],
        )

    context = combine(records)
    summary = await generator.generate(context)

    record = AnalysisRecord(
        id=store.new_id(),
        timestamp=utc_now().isoformat(),
        requested_count=len(records),
        succeeded_count=sum(1 for r in records if r.has_content),
        summary=summary,
        outcomes=tuple(r.outcome() for r in records),
        context=context,
    )
    store.put(record)
    logger.info("Analysis completed id=%s", record.id)

    if events is not None:
        await events.emit(
            "AnalysisCompleted",
            {
                "analysisId": record.id,
                "filesAnalyzed": record.requested_count,
                "successfullyParsed": record.succeeded_count,
                "documents": [_outcome_dict(o) for o in record.outcomes],
            },
            correlation_id=record.id,
        )
    return record


def _outcome_dict(outcome) -> dict:
    return {
        "filename": outcome.filename,
        "format": outcome.format.value,
        "status": outcome.status.value,
        "error": outcome.error,
    }


def chat_context(record: AnalysisRecord) -> str:
    """Documents plus the generated summary, as grounding for follow-ups."""
    return f"{record.context}\n\n=== Analysis Summary ===\n{record.summary}\n"


# -----------------------------------------------------------------------------
# Chat
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ChatResult:
    conversation_id: str
    response: str
    timestamp: datetime
    message_count: int


async def send_message(
    message: Optional[str],
    analysis_id: Optional[str],
    conversation_id: Optional[str] = None,
    *,
    analyses: AnalysisStore,
    conversations: ConversationStore,
    generator: Generator,
    events: Optional[EventPublisher] = None,
) -> ChatResult:
    if not message or not message.strip():
        raise InputError("Please provide a message", title="Message is required")
    if not analysis_id or not analysis_id.strip():
        raise InputError("Please provide the analysis the conversation refers to", title="Analysis ID is required")

    analysis = analyses.get(analysis_id)
    conv_id, _ = conversations.get_or_create(conversation_id)
    is_new = conv_id != conversation_id
    chat_logger.info("Processing chat message for conversation %s", conv_id)

    # Hold the conversation for the whole round trip so replayed history and
    # the appended turn stay in call order. Only a fresh id may create its
    # conversation; an existing one deleted meanwhile stays deleted.
    try:
        async with conversations.lock(conv_id):
            history = conversations.history(conv_id)
            response = await generator.chat(chat_context(analysis), history, message)
            timestamp = utc_now()
            count = conversations.append_turn(conv_id, message, response, timestamp, create=is_new)
    finally:
        conversations.release(conv_id)

    chat_logger.info("Chat response generated conversation=%s turns=%s", conv_id, count)
    if events is not None:
        await events.emit(
            "AnswerGenerated",
            {"conversationId": conv_id, "analysisId": analysis_id, "messageCount": count},
            correlation_id=conv_id,
        )
    return ChatResult(conversation_id=conv_id, response=response, timestamp=timestamp, message_count=count)
