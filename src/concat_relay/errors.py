from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    FAILED_TO_RETRIEVE_CONTENT = "FAILED_TO_RETRIEVE_CONTENT"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

    def __str__(self) -> str:
        return self.value


class FetchError(Exception):
    """
    Raised by fetch collaborators.
    - FAILED_TO_RETRIEVE_CONTENT is soft: the item is reported inline and the run continues
    - every other code is hard: the run is aborted
    """

    def __init__(self, code: ErrorCode, message: str = "", *, http_status: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status

    @property
    def soft(self) -> bool:
        return self.code is ErrorCode.FAILED_TO_RETRIEVE_CONTENT


class MalformedRequestError(ValueError):
    pass


class ClientDisconnectedError(ConnectionError):
    pass
