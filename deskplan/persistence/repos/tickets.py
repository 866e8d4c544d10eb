from __future__ import annotations

from sqlalchemy import and_, case, func, not_, select
from sqlalchemy.ext.asyncio import AsyncSession

from deskplan.domain.models import Ticket


COMPLETED_TICKET_STATUSES = ("completed", "resolved", "closed")
DELETED_TICKET_STATUS = "deleted"


async def count_tickets_by_state(session: AsyncSession, tenant_id: str) -> dict[str, int]:
    # One aggregate query so all four counts come from the same snapshot.
    not_archived = Ticket.archived_at.is_(None)
    is_completed = Ticket.status.in_(COMPLETED_TICKET_STATUSES)
    is_deleted = Ticket.status == DELETED_TICKET_STATUS
    stmt = select(
        func.coalesce(
            func.sum(case((and_(not_archived, not_(is_completed), not_(is_deleted)), 1), else_=0)), 0
        ).label("active"),
        func.coalesce(func.sum(case((and_(not_archived, is_completed), 1), else_=0)), 0).label(
            "completed"
        ),
        func.coalesce(func.sum(case((Ticket.archived_at.is_not(None), 1), else_=0)), 0).label(
            "archived"
        ),
    ).where(Ticket.tenant_id == tenant_id)
    row = (await session.execute(stmt)).one()
    return {
        "active": int(row.active or 0),
        "completed": int(row.completed or 0),
        "archived": int(row.archived or 0),
    }
