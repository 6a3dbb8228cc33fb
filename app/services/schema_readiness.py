"""Fail-closed check that ``user_media`` carries the archive columns.

Runs once at startup (fatal) and lazily before the first media write in the
process (recoverable). A positive probe is cached until ``reset()``.
"""

import errno
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.services.errors import ConnectivityError, MEDIA_ARCHIVE_REMEDIATION, ReadinessError

logger = get_logger("schema_readiness")

MEDIA_ARCHIVE_TABLE_NAME = "user_media"
MEDIA_ARCHIVE_REQUIRED_COLUMNS = ("archive_group_id", "archive_topic_id", "archive_message_id")

CONNECTIVITY_CODES = {
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "EHOSTUNREACH",
    "ENOTFOUND",
    "08001",
    "08006",
    "57P01",
}

PROBE_SQL = text(
    """
    SELECT column_name
    FROM information_schema.columns
    WHERE table_schema = 'public'
      AND table_name = :table_name
      AND column_name IN ('archive_group_id', 'archive_topic_id', 'archive_message_id')
    """
)


def _error_codes(error: BaseException) -> set[str]:
    """pgcode/sqlstate/errno names from the error and the DBAPI error it wraps."""
    codes = set()
    for candidate in (error, getattr(error, "orig", None)):
        if candidate is None:
            continue
        for attr in ("pgcode", "sqlstate"):
            value = getattr(candidate, attr, None)
            if isinstance(value, str):
                codes.add(value)
        number = getattr(candidate, "errno", None)
        if isinstance(number, int) and number in errno.errorcode:
            codes.add(errno.errorcode[number])
    return codes


def _error_message(error: BaseException) -> str:
    parts = [str(error)]
    orig = getattr(error, "orig", None)
    if orig is not None:
        parts.append(str(orig))
    return " ".join(part for part in parts if part)


def is_database_connectivity_issue(error: BaseException) -> bool:
    if _error_codes(error) & CONNECTIVITY_CODES:
        return True
    message = _error_message(error).lower()
    return "connect" in message or "connection" in message or "timeout" in message


def extract_archive_columns_from_db_error(error: BaseException) -> list[str]:
    """Map an insert failure on user_media to the archive columns it implies."""
    codes = _error_codes(error)
    message = _error_message(error).lower()
    diag = getattr(getattr(error, "orig", None), "diag", None)
    detail = getattr(diag, "message_detail", None)
    if isinstance(detail, str):
        message = f"{message} {detail.lower()}"

    if "42703" in codes:
        matched = [column for column in MEDIA_ARCHIVE_REQUIRED_COLUMNS if column in message]
        return matched or list(MEDIA_ARCHIVE_REQUIRED_COLUMNS)
    if "42P01" in codes and MEDIA_ARCHIVE_TABLE_NAME in message:
        return list(MEDIA_ARCHIVE_REQUIRED_COLUMNS)
    return []


def inspect_media_archive_readiness(db: Session) -> list[str]:
    """Return the required archive columns missing from user_media."""
    rows = db.execute(PROBE_SQL, {"table_name": MEDIA_ARCHIVE_TABLE_NAME}).scalars().all()
    found = {row for row in rows if isinstance(row, str)}
    return [column for column in MEDIA_ARCHIVE_REQUIRED_COLUMNS if column not in found]


def log_schema_mismatch(source: str, missing_columns: list[str]) -> None:
    logger.error(
        "media_archive.schema_readiness.mismatch",
        extra={
            "event": "media_archive.schema_readiness.mismatch",
            "context": {
                "source": source,
                "table": MEDIA_ARCHIVE_TABLE_NAME,
                "missing_columns": missing_columns,
                "remediation": MEDIA_ARCHIVE_REMEDIATION,
            },
        },
    )


def assert_media_archive_readiness(db: Session, source: str) -> None:
    try:
        missing = inspect_media_archive_readiness(db)
    except Exception as e:
        if is_database_connectivity_issue(e):
            logger.error(
                "media_archive.schema_readiness.connectivity_failed",
                extra={
                    "event": "media_archive.schema_readiness.connectivity_failed",
                    "context": {
                        "source": source,
                        "table": MEDIA_ARCHIVE_TABLE_NAME,
                        "remediation": "Check DATABASE_URL, network access, and database availability before retrying.",
                        "error": _error_message(e),
                    },
                },
            )
            raise ConnectivityError(e) from e
        raise

    if missing:
        log_schema_mismatch(source, missing)
        raise ReadinessError(missing, MEDIA_ARCHIVE_TABLE_NAME)


class SchemaReadinessGuard:
    """Caches a positive probe for the process lifetime."""

    def __init__(self):
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def ensure(self, db: Session, source: str = "runtime") -> None:
        if self._ready:
            return
        assert_media_archive_readiness(db, source)
        self._ready = True
        logger.info("Media archive schema ready", extra={"context": {"source": source}})

    def reset(self, reason: Optional[str] = None) -> None:
        if self._ready:
            logger.warning("Media archive readiness reset", extra={"context": {"reason": reason}})
        self._ready = False
