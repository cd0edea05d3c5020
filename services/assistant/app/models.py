# Pydantic data models (schemas) for the assistant's HTTP API.

from typing import List, Optional
from pydantic import BaseModel, Field

from .stores import AnalysisRecord, Turn

# -----------------------------------------------------------------------------
# Upload
# -----------------------------------------------------------------------------

class UploadedFile(BaseModel):
    """
    One saved upload. `filename` is the stored name to pass to /api/analysis.
    """
    filename: str
    original_name: str
    size: int
    mimetype: Optional[str] = None

class UploadResponse(BaseModel):
    message: str = "Files uploaded successfully"
    files: List[UploadedFile]
    count: int

# -----------------------------------------------------------------------------
# Analysis
# -----------------------------------------------------------------------------

class AnalysisFile(BaseModel):
    filename: str       # stored name returned by /api/upload
    original_name: str  # user's filename; its extension picks the decoder

class AnalysisRequest(BaseModel):
    files: List[AnalysisFile] = Field(default_factory=list)

class DocumentOutcome(BaseModel):
    """
    Per-document result of extraction. Text is never included.
    status: "success" | "empty_content" | "failure"
    """
    filename: str
    format: str
    status: str
    error: Optional[str] = None

class AnalysisResponse(BaseModel):
    """
    Response shape for POST /api/analysis and GET /api/analysis/{id}.
    The aggregated document context stays server-side.
    """
    id: str
    timestamp: str
    files_analyzed: int
    successfully_parsed: int
    summary: str
    documents: List[DocumentOutcome]

    @classmethod
    def from_record(cls, record: AnalysisRecord) -> "AnalysisResponse":
        return cls(
            id=record.id,
            timestamp=record.timestamp,
            files_analyzed=record.requested_count,
            successfully_parsed=record.succeeded_count,
            summary=record.summary,
            documents=[
                DocumentOutcome(
                    filename=o.filename,
                    format=o.format.value,
                    status=o.status.value,
                    error=o.error,
                )
                for o in record.outcomes
            ],
        )

class DeleteResponse(BaseModel):
    message: str
    id: str

# -----------------------------------------------------------------------------
# Chat
# -----------------------------------------------------------------------------

class ChatRequest(BaseModel):
    # Optional on the wire so missing fields surface as the assistant's own
    # "... is required" errors instead of a schema error.
    message: Optional[str] = None
    analysis_id: Optional[str] = None
    conversation_id: Optional[str] = None

class ChatResponse(BaseModel):
    conversation_id: str
    response: str
    timestamp: str
    message_count: int

class TurnOut(BaseModel):
    user_message: str
    assistant_response: str
    timestamp: str

    @classmethod
    def from_turn(cls, turn: Turn) -> "TurnOut":
        return cls(
            user_message=turn.user_message,
            assistant_response=turn.assistant_response,
            timestamp=turn.timestamp.isoformat(),
        )

class ConversationResponse(BaseModel):
    conversation_id: str
    history: List[TurnOut]
    message_count: int

class ClearResponse(BaseModel):
    message: str = "All conversations cleared"
    count: int

# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    error: str
    message: str
    documents: Optional[List[DocumentOutcome]] = None
