# src/signalrelay/interfaces/api/errors.py
"""Maps domain errors raised by the services onto HTTP responses."""

from fastapi import HTTPException

from signalrelay.domain.errors import (
    ExpiredError, InvalidStateError, NotFoundError, SignalRelayError, ValidationError,
)

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ExpiredError, 410),
)


def to_http(exc: SignalRelayError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            detail = {"message": str(exc)}
            if isinstance(exc, ValidationError):
                detail["errors"] = exc.errors
            if isinstance(exc, InvalidStateError) and exc.current:
                detail["current"] = exc.current
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=500, detail={"message": str(exc)})
