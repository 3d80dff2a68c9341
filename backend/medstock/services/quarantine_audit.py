"""MedStock — Quarantine workflow audit log."""
import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medstock.models.quarantine import (
    QUARANTINE_TRANSITIONS,
    QuarantineAction,
    QuarantineActionLog,
    QuarantineStatus,
)

logger = logging.getLogger(__name__)


def is_valid_transition(status: QuarantineStatus | str, action: QuarantineAction | str) -> bool:
    try:
        key = (QuarantineStatus(status), QuarantineAction(action))
    except ValueError:
        return False
    return key in QUARANTINE_TRANSITIONS


def log_action(
    db: AsyncSession,
    case_id: UUID,
    action: str,
    performed_by: str,
    previous_status: str | None,
    new_status: str,
    comments: str | None = None,
) -> QuarantineActionLog:
    """Add an audit row to the current transaction."""
    entry = QuarantineActionLog(
        case_id=case_id,
        action=action,
        performed_by=performed_by,
        previous_status=previous_status,
        new_status=new_status,
        comments=comments,
    )
    # No flush: the row commits atomically with the transition it records
    db.add(entry)
    logger.debug("Quarantine case %s: %s %s -> %s by %s", case_id, action, previous_status, new_status, performed_by)
    return entry


async def history(db: AsyncSession, case_id: UUID) -> list[QuarantineActionLog]:
    result = await db.execute(
        select(QuarantineActionLog)
        .where(QuarantineActionLog.case_id == case_id)
        .order_by(QuarantineActionLog.performed_at.desc(), QuarantineActionLog.id)
    )
    return list(result.scalars().all())
