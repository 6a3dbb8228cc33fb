from typing import Iterable, Optional

MEDIA_ARCHIVE_REMEDIATION = (
    "Apply the latest migrations to the target database before enabling media archive processing."
)
CONNECTIVITY_REMEDIATION = "Verify DATABASE_URL/network connectivity and rerun readiness checks."


class ValidationError(Exception):
    """Malformed profile or update input. Raised before anything is written."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class ReadinessError(Exception):
    code = "MEDIA_ARCHIVE_SCHEMA_MISMATCH"

    def __init__(self, missing_columns: Iterable[str], table_name: str = "user_media"):
        unique = list(dict.fromkeys(missing_columns))
        self.missing_columns = unique
        self.table_name = table_name
        self.remediation = MEDIA_ARCHIVE_REMEDIATION
        super().__init__(f"Missing required archive columns on {table_name}: {', '.join(unique)}")


class ConnectivityError(Exception):
    code = "MEDIA_ARCHIVE_DB_CONNECTIVITY"

    def __init__(self, cause: Optional[BaseException] = None):
        self.cause = cause
        self.remediation = CONNECTIVITY_REMEDIATION
        super().__init__("Database connectivity check failed while validating media archive schema.")


class ExternalServiceError(Exception):
    """AI or transport call failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        self.message = message
        super().__init__(f"{service}: {message}")


class InvalidOrderTransitionError(Exception):
    def __init__(self, order_type: str, from_status: str, to_status: str):
        self.order_type = order_type
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid {order_type} order transition: {from_status} -> {to_status}")


class InvalidStepError(Exception):
    def __init__(self, step: str):
        self.step = step
        super().__init__(f"Unknown conversation step: {step}")


class RateLimitedError(Exception):
    """Telegram answered 429; callers wait ``retry_after`` seconds before the next pass."""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Rate limited, retry after {retry_after}s")
