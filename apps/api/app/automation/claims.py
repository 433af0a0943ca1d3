from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, or_, select, update
from sqlalchemy.orm import Session

from app.automation.models import utcnow


def claim_rows(
    session: Session,
    model: Any,
    *,
    pending: ColumnElement[bool],
    limit: int,
    worker_id: str,
    timeout_seconds: int,
    now: datetime | None = None,
) -> list[str]:
    """Claim up to ``limit`` pending rows of ``model`` for ``worker_id``, oldest first.

    Candidates are read with ``FOR UPDATE SKIP LOCKED`` where the backend supports it;
    each candidate is then claimed with a conditional update, so a row is only returned
    to the worker whose update changed it. Claims older than ``timeout_seconds`` are
    considered abandoned and can be taken over.
    """
    claimed_at = now or utcnow()
    stale_before = claimed_at - timedelta(seconds=timeout_seconds)
    claimable = or_(model.claimed_by.is_(None), model.claimed_at < stale_before)

    candidate_ids = session.scalars(
        select(model.id)
        .where(pending, claimable)
        .order_by(model.created_at.asc(), model.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).all()

    claimed: list[str] = []
    for row_id in candidate_ids:
        result = session.execute(
            update(model)
            .where(model.id == row_id, pending, claimable)
            .values(claimed_by=worker_id, claimed_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(row_id)
    session.commit()
    return claimed


def confirm_claim(
    session: Session,
    model: Any,
    row_id: str,
    *,
    pending: ColumnElement[bool],
    worker_id: str,
    now: datetime | None = None,
) -> bool:
    """Renew ``worker_id``'s claim on ``row_id`` just before working on it.

    Returns False when the row was finished or taken over by another worker since it was claimed.
    """
    result = session.execute(
        update(model)
        .where(model.id == row_id, model.claimed_by == worker_id, pending)
        .values(claimed_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1
