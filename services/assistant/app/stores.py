"""
In-memory stores for completed analyses and follow-up conversations.

Both are plain process-memory maps guarded by a threading lock, built once in
create_app() and handed to request handlers through FastAPI dependencies.
Nothing expires: bounding or persisting them is left to a replacement store
with the same methods.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .errors import NotFoundError
from .extractor import DocumentOutcome

logger = logging.getLogger("stores")


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


# -----------------------------------------------------------------------------
# Analyses
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class AnalysisRecord:
    id: str
    timestamp: str
    requested_count: int
    succeeded_count: int
    summary: str
    outcomes: Tuple[DocumentOutcome, ...]
    context: str = field(repr=False)  # server-side only

    def __post_init__(self):
        if not 1 <= self.succeeded_count <= self.requested_count:
            raise ValueError(
                f"succeeded_count must be within 1..{self.requested_count}, got {self.succeeded_count}"
            )


class AnalysisStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, AnalysisRecord] = {}

    def new_id(self) -> str:
        return new_id()

    def put(self, record: AnalysisRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Analysis {record.id} already stored")
            self._records[record.id] = record
        logger.info("Stored analysis %s (%s/%s documents)", record.id, record.succeeded_count, record.requested_count)

    def get(self, analysis_id: str) -> AnalysisRecord:
        with self._lock:
            record = self._records.get(analysis_id)
        if record is None:
            raise NotFoundError("Analysis", analysis_id)
        return record

    def delete(self, analysis_id: str) -> bool:
        with self._lock:
            return self._records.pop(analysis_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# -----------------------------------------------------------------------------
# Conversations
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Turn:
    user_message: str
    assistant_response: str
    timestamp: datetime


class ConversationStore:
    """
    Conversation id -> ordered list of turns.

    Turns are only ever appended. A conversation exists from its first
    successful append; get_or_create() hands out ids without storing anything.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._turns: Dict[str, List[Turn]] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}

    def get_or_create(self, conversation_id: Optional[str] = None) -> Tuple[str, List[Turn]]:
        """
        Known id -> (id, copy of its turns). Unknown or missing id -> a fresh
        id with no turns; client-supplied ids are never adopted.
        """
        with self._lock:
            if conversation_id and conversation_id in self._turns:
                return conversation_id, list(self._turns[conversation_id])
        if conversation_id:
            logger.info("Unknown conversation %s, starting a new one", conversation_id)
        return new_id(), []

    def get(self, conversation_id: str) -> List[Turn]:
        with self._lock:
            turns = self._turns.get(conversation_id)
            if turns is None:
                raise NotFoundError("Conversation", conversation_id)
            return list(turns)

    def history(self, conversation_id: str) -> List[Turn]:
        """Copy of the turns so far; empty for a conversation not yet stored."""
        with self._lock:
            return list(self._turns.get(conversation_id, ()))

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """Per-conversation lock held across snapshot -> generate -> append."""
        with self._lock:
            send_lock = self._send_locks.get(conversation_id)
            if send_lock is None:
                send_lock = self._send_locks[conversation_id] = asyncio.Lock()
            return send_lock

    def append_turn(
        self,
        conversation_id: str,
        user_message: str,
        assistant_response: str,
        timestamp: Optional[datetime] = None,
        *,
        create: bool = True,
    ) -> int:
        """
        Append one turn atomically and return the new turn count.

        create=False appends only to a conversation that is still stored, so a
        conversation deleted mid-send is not brought back by its late turn.
        """
        with self._lock:
            turns = self._turns.get(conversation_id)
            if turns is None:
                if not create:
                    raise NotFoundError("Conversation", conversation_id)
                turns = self._turns[conversation_id] = []
            ts = timestamp
            if ts is None:
                # clamp so a wall-clock step back cannot break ordering
                ts = max(utc_now(), turns[-1].timestamp) if turns else utc_now()
            elif turns and ts < turns[-1].timestamp:
                raise ValueError(
                    f"Turn timestamp {ts.isoformat()} precedes last turn of {conversation_id}"
                )
            turns.append(Turn(user_message, assistant_response, ts))
            return len(turns)

    def release(self, conversation_id: str) -> None:
        """Drop the send lock of an id that never got (or no longer has) turns."""
        with self._lock:
            if conversation_id not in self._turns:
                self._send_locks.pop(conversation_id, None)

    def delete_one(self, conversation_id: str) -> bool:
        with self._lock:
            self._send_locks.pop(conversation_id, None)
            return self._turns.pop(conversation_id, None) is not None

    def delete_all(self) -> int:
        with self._lock:
            count = len(self._turns)
            self._turns.clear()
            self._send_locks.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)
