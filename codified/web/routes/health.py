"""Health check API routes.

Provides endpoints for monitoring application health and connectivity.
"""

from fastapi import APIRouter, status
from sqlalchemy import text

from codified.config import get_config
from codified.db.connection import get_session

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check():
    """Check application health.

    Verifies database connectivity.
    """
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        return {
            "status": "error",
            "database": "disconnected",
            "detail": str(e),
        }
    return {"status": "ok", "database": "connected", "mergeDispatch": get_config().merge.dispatch}
