from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class PredictionStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    PredictionStatus.SUCCEEDED,
    PredictionStatus.FAILED,
    PredictionStatus.CANCELED,
})


class Prediction(BaseModel):
    """A Replicate prediction as read from the API.

    Unknown fields are kept so the HTTP layer can hand the provider's
    response back unchanged.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    status: PredictionStatus
    model: Optional[str] = None
    version: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    output: Optional[Any] = None
    error: Optional[Any] = None
    logs: Optional[str] = None
    urls: Optional[Dict[str, str]] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def output_url(self) -> Optional[str]:
        """First URL in the output, which is what the try-on UI displays."""
        if isinstance(self.output, str):
            return self.output
        if isinstance(self.output, list):
            for item in self.output:
                if isinstance(item, str):
                    return item
        return None

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=False)
