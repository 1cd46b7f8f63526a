"""Shareable code generation for referral and discount codes.

Codes look like ``PREFIX-XXXXXX``. The generator has no database access:
callers check for collisions and rely on the unique index on ``code`` as
the final guard, retrying the insert when it trips.
"""

import secrets
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from tenacity import RetryError, Retrying, retry_if_exception, stop_after_attempt

from referral_engine.logging_config import get_logger
from referral_engine.settings import settings

logger = get_logger(__name__)

T = TypeVar("T")

# Exclude confusing characters: 0, O, I, l, 1
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

# Unique indexes on generated codes, as named in driver error messages
CODE_UNIQUE_MARKERS = (
    "referral_codes.code",
    "discount_codes.code",
    "ix_referral_codes_code",
    "ix_discount_codes_code",
)


class CodeGenerationError(Exception):
    """Raised when no unused code could be produced within the attempt budget."""

    def __init__(self, prefix: str, attempts: int):
        self.prefix = prefix
        self.attempts = attempts
        super().__init__(f"Could not generate a unique '{prefix}' code after {attempts} attempts")


def normalize_code(code: str) -> str:
    """Normalize a code for case-insensitive lookups."""
    return code.strip().upper()


def generate_code(prefix: str, length: int | None = None) -> str:
    """Generate a readable code.

    Args:
        prefix: Code prefix, e.g. ``REF``
        length: Number of random characters (defaults to settings)

    Returns:
        Code such as ``REF-K7QX2M``
    """
    length = length or settings.code_length
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{normalize_code(prefix)}-{suffix}"


def generate_unused_code(prefix: str, is_taken: Callable[[str], bool]) -> str:
    """Generate codes until one is not taken.

    Args:
        prefix: Code prefix
        is_taken: Callback returning True when a code already exists

    Returns:
        A code that was free at check time

    Raises:
        CodeGenerationError: If every attempt collided
    """
    for _ in range(settings.max_code_attempts):
        code = generate_code(prefix)
        if not is_taken(code):
            return code
        logger.debug("code_collision", prefix=prefix, code=code)

    raise CodeGenerationError(prefix, settings.max_code_attempts)


def _log_retry(retry_state) -> None:
    logger.warning(
        "code_collision_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


def is_code_collision(exc: BaseException) -> bool:
    """Check whether an error is a duplicate on a ``code`` unique index.

    SQLite reports ``UNIQUE constraint failed: <table>.code``, PostgreSQL
    names the index (``ix_<table>_code``).
    """
    if not isinstance(exc, IntegrityError):
        return False
    message = str(exc.orig)
    return any(marker in message for marker in CODE_UNIQUE_MARKERS)


def retry_on_collision(operation: Callable[[], T], prefix: str) -> T:
    """Run an insert operation, retrying when a code unique index trips.

    The operation must open its own transaction so each attempt starts clean.
    Any other error, including other constraint violations, propagates
    unchanged on the first attempt.

    Args:
        operation: Callable performing the insert
        prefix: Code prefix, for error reporting

    Returns:
        Whatever the operation returns

    Raises:
        CodeGenerationError: If the operation kept colliding on the code
    """
    retrying = Retrying(
        retry=retry_if_exception(is_code_collision),
        stop=stop_after_attempt(settings.max_code_attempts),
        after=_log_retry,
    )
    try:
        return retrying(operation)
    except RetryError as exc:
        raise CodeGenerationError(prefix, settings.max_code_attempts) from exc
