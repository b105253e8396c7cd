from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.db.session import get_db
from marketplace.services.locks import get_redis


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness probe - 503 if the database or Redis is unreachable."""
    gateways = {
        "razorpay": settings.razorpay_configured,
        "stripe": settings.stripe_configured,
    }
    try:
        db.execute(text("SELECT 1"))
        get_redis().ping()
        return {"status": "ready", "gateways": gateways}
    except Exception as e:
        response.status_code = 503
        return {"status": "not_ready", "error": str(e), "gateways": gateways}
