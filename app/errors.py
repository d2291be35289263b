"""Failures the handoff core reports to its callers.

Each error carries the HTTP status and machine code the transport renders.
Identity mismatches on download/status are not errors: they look exactly
like an unknown key.
"""


class HandoffError(Exception):
    status_code = 400
    code = "error"
    default_message = "request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class KeyCollision(HandoffError):
    code = "key_collision"
    default_message = "key already in use"


class KeyspaceExhausted(HandoffError):
    status_code = 503
    code = "keyspace_exhausted"
    default_message = "no free keys left, try again later"


class UnknownSession(HandoffError):
    status_code = 404
    code = "unknown_session"
    default_message = "unknown key"


class InvalidPayload(HandoffError):
    status_code = 400
    code = "invalid_payload"
    default_message = "invalid or no file submitted"


class PayloadTooLarge(InvalidPayload):
    status_code = 413
    code = "payload_too_large"
    default_message = "file exceeds max upload size"


class TranscodeFailed(HandoffError):
    status_code = 502
    code = "transcode_failed"
    default_message = "conversion failed"

    def __init__(self, returncode: int | None = None, message: str | None = None):
        self.returncode = returncode
        if message is None and returncode is not None:
            message = f"kepubify error code {returncode}"
        super().__init__(message)


class Forbidden(HandoffError):
    status_code = 403
    code = "forbidden"
    default_message = "forbidden"
