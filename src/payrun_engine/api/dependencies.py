"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.config import Settings, get_settings
from payrun_engine.database import init_db
from payrun_engine.services.authorization import Actor, Role


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, session_factory = init_db()
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def _parse_uuid(value: str | None, header: str) -> UUID:
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{header} header is required",
        )
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header} format",
        )


async def get_organization_id(
    x_organization_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Extract organization ID from header."""
    return _parse_uuid(x_organization_id, "X-Organization-ID")


async def get_actor(
    organization_id: Annotated[UUID, Depends(get_organization_id)],
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
    x_employee_id: Annotated[str | None, Header()] = None,
) -> Actor:
    """Build the calling actor from identity headers."""
    user_id = _parse_uuid(x_user_id, "X-User-ID")
    try:
        role = Role(x_user_role or "")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Role header must be one of: "
            + ", ".join(r.value for r in Role),
        )
    employee_id = _parse_uuid(x_employee_id, "X-Employee-ID") if x_employee_id else None
    return Actor(
        user_id=user_id,
        organization_id=organization_id,
        role=role,
        employee_id=employee_id,
    )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
CurrentActor = Annotated[Actor, Depends(get_actor)]
AppSettings = Annotated[Settings, Depends(get_settings)]
