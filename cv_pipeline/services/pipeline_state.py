"""
CV pipeline state machine.

The cv_extractions table is the only coordination point between the upload
API, the worker and the extraction service (which may write results back on
its own in async mode). Every status change is therefore a compare-and-swap:

    UPDATE cv_extractions SET status = :to, ...
     WHERE id = :id AND status = :expected

and only the writer whose UPDATE matched a row owns the transition.
"""

import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from cv_pipeline.core.logging import log_pipeline_event
from cv_pipeline.db.database import utc_now
from cv_pipeline.models.cv_extraction import CVExtraction
from cv_pipeline.services.metrics import get_metrics_service
from cv_pipeline.utils.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class ExtractionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorPhase:
    """Values stored in cv_extractions.error_phase."""

    PYTHON_CONNECTION = "python_connection"
    PYTHON_AUTH_FAILED = "python_auth_failed"
    PYTHON_BAD_REQUEST = "python_bad_request"
    PYTHON_EXTRACTION = "python_extraction"
    DATABASE_SAVE = "database_save"
    LLM_LOGGING = "llm_logging"
    UNKNOWN = "unknown"

    ALL = (
        PYTHON_CONNECTION,
        PYTHON_AUTH_FAILED,
        PYTHON_BAD_REQUEST,
        PYTHON_EXTRACTION,
        DATABASE_SAVE,
        LLM_LOGGING,
        UNKNOWN,
    )


S = ExtractionStatus

TRANSITIONS: Dict[ExtractionStatus, FrozenSet[ExtractionStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.FAILED}),
    S.PROCESSING: frozenset({S.EXTRACTED, S.FAILED}),
    S.EXTRACTED: frozenset({S.IMPORTING, S.FAILED}),
    # importing -> extracted is the bounded import retry
    S.IMPORTING: frozenset({S.COMPLETED, S.FAILED, S.EXTRACTED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.FAILED})

PROGRESS: Dict[ExtractionStatus, int] = {
    S.PENDING: 10,
    S.PROCESSING: 50,
    S.EXTRACTED: 75,
    S.IMPORTING: 90,
    S.COMPLETED: 100,
    S.FAILED: 0,
}

STATUS_MESSAGES: Dict[ExtractionStatus, str] = {
    S.PENDING: "CV uploaded, waiting to be processed",
    S.PROCESSING: "Extracting data from CV",
    S.EXTRACTED: "Data extracted, waiting to be saved",
    S.IMPORTING: "Saving extracted data to the employee profile",
    S.COMPLETED: "CV processed successfully",
    S.FAILED: "CV processing failed",
}


def is_legal_transition(from_status: str, to_status: str) -> bool:
    try:
        return S(to_status) in TRANSITIONS[S(from_status)]
    except ValueError:
        return False


def progress_for(status: str) -> int:
    try:
        return PROGRESS[S(status)]
    except ValueError:
        return 0


def message_for(status: str) -> str:
    try:
        return STATUS_MESSAGES[S(status)]
    except ValueError:
        return "Unknown status"


async def transition(
    db: AsyncSession,
    extraction_id: UUID,
    expected: ExtractionStatus,
    target: ExtractionStatus,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Move an extraction from ``expected`` to ``target`` if it is still in ``expected``.

    Does not commit; the caller owns the transaction so the status change can
    share it with other writes (the importer completes inside its own
    transaction).

    Returns:
        True when this call performed the transition, False when the record
        was no longer in ``expected`` (another writer got there first).

    Raises:
        InvalidTransitionError: ``expected -> target`` is not an edge of the
            state machine.
    """
    expected = S(expected)
    target = S(target)
    if target not in TRANSITIONS[expected]:
        raise InvalidTransitionError(expected.value, target.value)

    payload = dict(values or {})
    payload["status"] = target.value
    payload["updated_at"] = utc_now()

    stmt = (
        update(CVExtraction)
        .where(CVExtraction.id == extraction_id, CVExtraction.status == expected.value)
        .values(**payload)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    swapped = result.rowcount == 1

    if swapped:
        log_pipeline_event(
            str(extraction_id),
            "transition",
            from_status=expected.value,
            to_status=target.value,
            phase=payload.get("error_phase"),
        )
        get_metrics_service().record_transition(expected.value, target.value)
    else:
        logger.debug(
            f"Extraction {extraction_id}: {expected.value} -> {target.value} skipped, "
            "record no longer in expected state"
        )
    return swapped


async def fail(
    db: AsyncSession,
    extraction_id: UUID,
    expected: ExtractionStatus,
    error_message: str,
    error_phase: str,
    extra: Optional[Dict[str, Any]] = None,
) -> bool:
    """Transition to failed, recording the message and phase."""
    if error_phase not in ErrorPhase.ALL:
        error_phase = ErrorPhase.UNKNOWN
    values = {"error_message": error_message, "error_phase": error_phase}
    if extra:
        values.update(extra)
    return await transition(db, extraction_id, expected, S.FAILED, values)
