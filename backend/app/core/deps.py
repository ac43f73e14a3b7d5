import uuid

from fastapi import Header, HTTPException, status


async def get_acting_user_id(
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
) -> uuid.UUID | None:
    """Acting user for audit columns, taken from the X-Actor-Id header.

    Authentication happens upstream (gateway); this service only records who
    acted. Missing header → None (anonymous/system).
    """
    if not x_actor_id:
        return None
    try:
        return uuid.UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id must be a UUID.",
        )
