"""FastAPI dependencies shared by the API routers."""

from typing import Optional

from fastapi import Header, HTTPException, status


async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Identity of the calling user, set by the upstream gateway.

    Raises:
        HTTPException 401: If the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()
