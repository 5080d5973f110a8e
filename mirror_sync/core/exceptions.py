import traceback
from typing import Optional


class MirrorSyncError(Exception):
    error = "Bad Request"
    code = "MIRROR_SYNC_ERROR"

    def __init__(self, message: str, status_code: int = 400, code: Optional[str] = None, stack_trace: bool = False):
        self.message = message
        self.status_code = status_code
        if code is not None:
            self.code = code
        self.stack_trace = traceback.format_exc() if stack_trace else None
        super().__init__(self.message)

    def to_content(self) -> dict:
        return {"error": self.error, "message": self.message, "code": self.code}


class IdempotencyConflictError(MirrorSyncError):
    error = "Conflict"
    code = "IDEMPOTENCY_CONFLICT"

    def __init__(self):
        super().__init__("Request with same idempotency key but different body already exists", status_code=409)


class IdempotencyInProgressError(MirrorSyncError):
    error = "Conflict"
    code = "IDEMPOTENCY_IN_PROGRESS"

    def __init__(self):
        super().__init__("A request with this idempotency key is still being processed", status_code=409)


class MissingIdempotencyKeyError(MirrorSyncError):
    code = "MISSING_IDEMPOTENCY_KEY"

    def __init__(self):
        super().__init__("x-idempotency-key header is required for this endpoint", status_code=400)


class InvalidIdempotencyKeyError(MirrorSyncError):
    code = "INVALID_IDEMPOTENCY_KEY"

    def __init__(self, min_length: int):
        super().__init__(f"x-idempotency-key must be at least {min_length} characters long", status_code=400)


class OrderNotFoundError(MirrorSyncError):
    error = "Not Found"
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", status_code=404)


class OrderAlreadyExistsError(MirrorSyncError):
    error = "Conflict"
    code = "ORDER_ALREADY_EXISTS"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} already exists", status_code=409)


class AdminAccessDeniedError(MirrorSyncError):
    error = "Forbidden"
    code = "ADMIN_ACCESS_DENIED"

    def __init__(self):
        super().__init__("Admin access required", status_code=403)


class MirrorSourceError(MirrorSyncError):
    """Transient failure talking to the mirror node."""
    error = "Bad Gateway"
    code = "MIRROR_SOURCE_ERROR"

    def __init__(self, message: str):
        super().__init__(message, status_code=502)


class EventStoreError(MirrorSyncError):
    """Durable write of a mirror event failed; the topic's cursor must not move past it."""
    error = "Internal Server Error"
    code = "EVENT_STORE_ERROR"

    def __init__(self, topic_id: str, sequence_number: int):
        self.topic_id = topic_id
        self.sequence_number = sequence_number
        super().__init__(f"failed to store event {topic_id}-{sequence_number}", status_code=500)
