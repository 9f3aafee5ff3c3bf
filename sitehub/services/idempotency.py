"""
Idempotency ledger for field actions.
Each client action id maps to the outcome of its first execution.
"""
from dataclasses import dataclass
from typing import Optional, Any, Dict

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import SyncActionLog, SyncError
from ..schemas.sync import SyncStatus

logger = structlog.get_logger(__name__)


class LedgerWriteError(Exception):
    """The outcome could not be persisted; nothing was applied and the action may be retried."""


@dataclass
class IdempotencyCheck:
    is_duplicate: bool
    existing_outcome: Optional[SyncActionLog] = None


def check_idempotency(db: Session, action_id: str) -> IdempotencyCheck:
    existing = db.get(SyncActionLog, action_id)
    if existing is not None:
        return IdempotencyCheck(is_duplicate=True, existing_outcome=existing)
    return IdempotencyCheck(is_duplicate=False)


def record_outcome(
    db: Session,
    action_id: str,
    status: SyncStatus,
    action_type: str,
    actor_id: Any,
    actor_role: Optional[str],
    project_id: Any,
    organization_id: Any = None,
    payload: Optional[Dict] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    error: Optional[str] = None,
) -> SyncActionLog:
    """
    Stage a ledger row in the current transaction. The caller commits.
    """
    if status == SyncStatus.DUPLICATE:
        raise ValueError("DUPLICATE is never stored")
    row = SyncActionLog(
        id=action_id,
        user_id=actor_id,
        user_role=actor_role,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        project_id=project_id,
        organization_id=organization_id,
        payload=payload,
        status=status.value,
        error_message=error,
    )
    db.add(row)
    return row


def commit_outcome(db: Session, action_id: str) -> Optional[SyncActionLog]:
    """
    Commit the pending transaction holding a ledger row.

    Returns:
        None when committed, or the competing ledger row when another request
        recorded the same action id first (the whole transaction is rolled back)

    Raises:
        LedgerWriteError: the transaction could not be committed
    """
    try:
        db.commit()
        return None
    except IntegrityError as e:
        db.rollback()
        existing = db.get(SyncActionLog, action_id)
        if existing is not None:
            logger.info("sync_action_raced", action_id=action_id, status=existing.status)
            return existing
        logger.error("sync_ledger_write_failed", action_id=action_id, error=str(e))
        raise LedgerWriteError(str(e)) from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("sync_ledger_write_failed", action_id=action_id, error=str(e))
        raise LedgerWriteError(str(e)) from e


def record_rejection(
    db: Session,
    action_id: str,
    action_type: str,
    actor_id: Any,
    actor_role: Optional[str],
    project_id: Any,
    organization_id: Any,
    payload: Optional[Dict],
    entity_type: Optional[str],
    reason: str,
) -> Optional[SyncActionLog]:
    """
    Persist a REJECTED outcome and its SyncError row in a fresh transaction.

    Failures are logged and swallowed: the caller already has its answer and an
    unrecorded rejection is simply re-evaluated on retry.

    Returns:
        The competing ledger row when another request recorded the same
        action id first, otherwise None
    """
    try:
        db.add(SyncError(sync_action_id=action_id, user_id=actor_id, reason=reason, payload=payload))
        record_outcome(
            db,
            action_id,
            SyncStatus.REJECTED,
            action_type=action_type,
            actor_id=actor_id,
            actor_role=actor_role,
            project_id=project_id,
            organization_id=organization_id,
            payload=payload,
            entity_type=entity_type,
            error=reason,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        return db.get(SyncActionLog, action_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("sync_rejection_log_failed", action_id=action_id, error=str(e))
    return None
