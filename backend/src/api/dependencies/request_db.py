"""Per-request database sessions from the app's session factory."""

from typing import Iterator

from fastapi import Request
from sqlalchemy.orm import Session

from src.database.session import session_scope
from src.platform.errors import ServiceUnavailableError


def get_request_db_session(request: Request) -> Iterator[Session]:
    """Yield a session for this request; closed when the response is sent."""
    session_factory = getattr(request.app.state, "session_factory", None)
    if session_factory is None:
        raise ServiceUnavailableError("Database not configured")
    yield from session_scope(session_factory)
