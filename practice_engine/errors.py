"""Typed errors raised by the practice engine.

Every failure path of the engine ends in one of these. Each class carries
the HTTP status code the API layer renders it with, so services never
import FastAPI.
"""


class EngineError(Exception):
    status_code = 500
    code = "engine_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidConfig(EngineError):
    status_code = 400
    code = "invalid_config"


class InvalidAnswerFormat(EngineError):
    status_code = 400
    code = "invalid_answer_format"


class Unauthenticated(EngineError):
    status_code = 401
    code = "unauthenticated"


class Forbidden(EngineError):
    status_code = 403
    code = "forbidden"


class SessionNotFound(EngineError):
    status_code = 404
    code = "session_not_found"


class ItemNotFound(EngineError):
    status_code = 404
    code = "item_not_found"


class SessionCompleted(EngineError):
    status_code = 400
    code = "session_completed"


class Conflict(EngineError):
    status_code = 409
    code = "conflict"


class AlreadyFinalized(Conflict):
    code = "already_finalized"


class RatingUpdateFailed(EngineError):
    status_code = 409
    code = "rating_update_failed"


class StorageTimeout(EngineError):
    status_code = 500
    code = "storage_timeout"


class StorageUnavailable(EngineError):
    status_code = 500
    code = "storage_unavailable"
