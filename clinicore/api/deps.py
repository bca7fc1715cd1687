"""
Dependencies for authentication, database sessions, job queue access and cron guards.
"""
import hmac
from typing import Generator, Optional
from fastapi import Depends, HTTPException, status, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from clinicore import config
from clinicore.database import SessionLocal
from clinicore.integrations.email import Mailer
from clinicore.jobs.report_queue import ReportQueue
from clinicore.models.db import User
from clinicore.utils import get_logger

logger = get_logger(__name__)
security = HTTPBearer()

def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()

def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Extract and validate user from API key.

    Raises:
        HTTPException: If the API key does not belong to any user
    """
    api_key = credentials.credentials

    user = db.query(User).filter(User.api_key == api_key).first()

    if not user:
        logger.warning(
            "Authentication failed: invalid API key",
            api_key_prefix=api_key[:10] + "..." if len(api_key) > 10 else api_key
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.debug("User authenticated", user_id=user.id)
    return user

def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    Guard for the externally triggered job endpoints.

    Only enforced when APP_ENV is ``production``; the caller must send
    ``Authorization: Bearer <CRON_SECRET>``.
    """
    if config.APP_ENV != "production":
        return
    expected = config.CRON_SECRET
    provided = authorization[7:] if authorization and authorization.startswith("Bearer ") else None
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        logger.warning("Rejected job trigger: bad or missing cron secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

def get_report_queue(request: Request) -> ReportQueue:
    """Report queue created at startup and stored on ``app.state``."""
    queue = getattr(request.app.state, "report_queue", None)  # type: ignore[attr-defined]
    if queue is None:
        raise HTTPException(status_code=503, detail="Report queue not available")
    return queue

def get_mailer(request: Request) -> Mailer:
    mailer = getattr(request.app.state, "mailer", None)  # type: ignore[attr-defined]
    if mailer is None:
        raise HTTPException(status_code=503, detail="Email transport not configured")
    return mailer
