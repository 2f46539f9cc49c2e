from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from services.ledger_errors import ConcurrentUpdate, Conflict, InvariantViolation, LedgerError, StorageUnavailable


TX_LOGGER = logging.getLogger("tool_ledger.transactions")


def _tool_details(tool_id: int | None) -> dict:
    return {"toolID": tool_id} if tool_id is not None else {}


@contextmanager
def guarded_write(db: Session, operation: str, tool_id: int | None = None) -> Iterator[None]:
    """Commit the block's writes, or roll back and raise a ``LedgerError``.

    Storage failures surface as ``ConcurrentUpdate``, ``Conflict`` or
    ``StorageUnavailable``; the session is always clean afterwards.
    """
    try:
        yield
        db.commit()
    except LedgerError as exc:
        db.rollback()
        if isinstance(exc, InvariantViolation):
            TX_LOGGER.error("Transaction aborted op=%s tool_id=%s reason=%s", operation, tool_id, exc.message)
        else:
            TX_LOGGER.warning("Transaction rejected op=%s tool_id=%s error=%s reason=%s", operation, tool_id, exc.code, exc.message)
        raise
    except StaleDataError as exc:
        db.rollback()
        TX_LOGGER.warning("Transaction lost race op=%s tool_id=%s", operation, tool_id)
        raise ConcurrentUpdate(
            f"Tool {tool_id} was changed by another transaction. Refresh and retry.",
            **_tool_details(tool_id),
        ) from exc
    except IntegrityError as exc:
        db.rollback()
        TX_LOGGER.warning("Transaction conflict op=%s tool_id=%s error=%s", operation, tool_id, exc.orig)
        raise Conflict(
            f"Could not apply {operation}; a conflicting record exists.",
            **_tool_details(tool_id),
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        TX_LOGGER.error("Storage failure op=%s tool_id=%s error=%s", operation, tool_id, exc)
        raise StorageUnavailable("Tool ledger storage is unavailable. Please retry.", **_tool_details(tool_id)) from exc
