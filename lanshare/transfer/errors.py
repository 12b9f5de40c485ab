"""Errors raised by the transfer session manager and the sender."""


class TransferError(Exception):
    """A request-scoped failure reported back to the remote peer."""
    status_code = 500
    detail = "Transfer failed"

    def __init__(self, detail: str | None = None):
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class MalformedRequest(TransferError):
    status_code = 400
    detail = "Missing parameters"


class Unauthorized(TransferError):
    # Same message for unknown session and wrong token
    status_code = 403
    detail = "Invalid session or token"

    def __init__(self):
        super().__init__()


class UnknownFile(TransferError):
    status_code = 400
    detail = "Invalid fileId"


class StorageError(TransferError):
    status_code = 500
    detail = "Failed to write file"


class SendError(Exception):
    """Raised by the sender when a peer rejects or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message} (status {status_code}): {body}"
        super().__init__(message)
