import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    dispatcher = getattr(request.app.state, "dispatcher", None)
    notifications = "running" if dispatcher is not None and dispatcher.running else "stopped"
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected", "notifications": notifications}
    except SQLAlchemyError as e:
        logger.warning(f"Health check failed: {e}")
        return {"status": "unhealthy", "database": str(e), "notifications": notifications}
