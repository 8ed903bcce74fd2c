"""Map domain errors to HTTP errors."""

from fastapi import HTTPException

from ..errors import (
    AgencyError,
    DuplicateArtifactError,
    DuplicateSessionError,
    InvalidTransitionError,
    SessionBusyError,
    SnapshotNotFoundError,
    UnknownSessionError,
    UnknownSessionTypeError,
)

_STATUS_CODES: tuple[tuple[type[AgencyError], int], ...] = (
    (UnknownSessionError, 404),
    (UnknownSessionTypeError, 404),
    (SnapshotNotFoundError, 404),
    (DuplicateSessionError, 409),
    (DuplicateArtifactError, 409),
    (SessionBusyError, 409),
    (InvalidTransitionError, 409),
)


def to_http_error(error: AgencyError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
