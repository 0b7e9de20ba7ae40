"""
Identifier service.

Customer and estimate identifiers are generated client-side (CUS-######,
EST-######) with no reservation step, so inserts are retried with a fresh
identifier when the primary key already exists. Draft handles use
temp-<timestamp>-<random> placeholders.
"""
import logging
import secrets
import string
import time
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from estimator.exceptions import IdentifierCollisionError
from estimator.models import TEMP_ID_PREFIX

logger = logging.getLogger(__name__)

CUSTOMER_PREFIX = 'CUS'
ESTIMATE_PREFIX = 'EST'
DEFAULT_MAX_ATTEMPTS = 5

_TEMP_ALPHABET = string.ascii_lowercase + string.digits


def generate_identifier(prefix: str) -> str:
    """Human-readable identifier: prefix + 6-digit zero-padded random number."""
    return f"{prefix}-{secrets.randbelow(1000000):06d}"


def mint_temp_id() -> str:
    """Temporary draft identifier: temp-<epoch millis>-<9 random chars>."""
    suffix = ''.join(secrets.choice(_TEMP_ALPHABET) for _ in range(9))
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{suffix}"


def fallback_submission_key() -> str:
    """Guard key for drafts that carry no temporary identifier."""
    return f"submission-{int(time.time() * 1000)}"


def insert_with_identifier(
    session: Session,
    model,
    prefix: str,
    build: Callable[[str], object],
    max_attempts: Optional[int] = None,
    generator: Callable[[str], str] = generate_identifier
):
    """
    Insert a row whose primary key is a generated identifier.

    `build(identifier)` returns the unsaved instance. The row is committed
    on its own. A uniqueness failure on the primary key triggers a retry
    with a regenerated identifier; any other integrity failure propagates.

    Returns:
        The committed instance.

    Raises:
        IdentifierCollisionError: every attempt collided
        IntegrityError: the insert failed for a reason other than a collision
    """
    attempts = max_attempts or DEFAULT_MAX_ATTEMPTS

    for attempt in range(1, attempts + 1):
        identifier = generator(prefix)
        row = build(identifier)
        try:
            session.add(row)
            session.commit()
            return row
        except IntegrityError:
            session.rollback()
            if session.get(model, identifier) is None:
                raise
            logger.warning(
                f"[IDS] Identifier collision on {identifier} "
                f"(attempt {attempt}/{attempts}), regenerating"
            )

    raise IdentifierCollisionError(prefix, attempts)
