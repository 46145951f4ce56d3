# collision/errors.py
from __future__ import annotations

from typing import Any, Dict


class CollisionError(Exception):
    """Base for every domain error surfaced to clients as an envelope `msg`.

    `message_key` is looked up in collision.i18n; `params` are formatted into it.
    """

    code: int = 500
    http_status: int = 500
    message_key: str = "ERR_INTERNAL"

    def __init__(self, message_key: str | None = None, **params: Any):
        if message_key:
            self.message_key = message_key
        self.params: Dict[str, Any] = params
        super().__init__(f"{self.message_key} {params}" if params else self.message_key)


class ValidationError(CollisionError):
    code = 400
    http_status = 400
    message_key = "ERR_VALIDATION"


class Unauthorized(CollisionError):
    code = 401
    http_status = 401
    message_key = "ERR_UNAUTHORIZED"


class Forbidden(CollisionError):
    code = 403
    http_status = 403
    message_key = "ERR_FORBIDDEN"


class NotFound(CollisionError):
    code = 404
    http_status = 404
    message_key = "ERR_NOT_FOUND"


class NoCandidates(CollisionError):
    code = 404
    http_status = 404
    message_key = "ERR_NO_CANDIDATES"


class Conflict(CollisionError):
    code = 409
    http_status = 409
    message_key = "ERR_CONFLICT"


class InsufficientBalance(CollisionError):
    code = 605
    http_status = 400
    message_key = "ERR_INSUFFICIENT_BALANCE"


class DeadlinePassed(CollisionError):
    code = 606
    http_status = 400
    message_key = "ERR_DEADLINE_PASSED"


class TooEarly(CollisionError):
    code = 607
    http_status = 400
    message_key = "ERR_TOO_EARLY"
