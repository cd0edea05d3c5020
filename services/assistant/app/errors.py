# Error taxonomy for the assistant core.
#
# Every error carries the HTTP status and short title it is translated to at
# the API boundary (see main.py). ExtractionFailure never reaches the boundary:
# extractor.extract() always turns it into a Failure outcome.

from typing import Any, Dict, List, Optional


class AssistantError(Exception):
    status_code = 500
    title = "Internal error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(AssistantError):
    """User-correctable request problem; the message is shown verbatim."""
    status_code = 400
    title = "Invalid request"

    def __init__(self, message: str, title: Optional[str] = None):
        super().__init__(message)
        if title:
            self.title = title


class ExtractionFailure(AssistantError):
    """Raised by a decoder; captured as outcome data, never propagated."""
    status_code = 422
    title = "Extraction failed"


class AggregateEmptyError(AssistantError):
    """No document in the batch yielded any text."""
    status_code = 400
    title = "No content extracted"

    def __init__(self, message: str, documents: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.documents = documents or []


class GenerationFailure(AssistantError):
    """The generation service errored, timed out or returned nothing."""
    status_code = 502
    title = "Generation failed"


class NotFoundError(AssistantError):
    status_code = 404
    title = "Not found"

    def __init__(self, kind: str, key: str):
        super().__init__(f"No {kind.lower()} found with ID: {key}")
        self.title = f"{kind} not found"
        self.kind = kind
        self.key = key
