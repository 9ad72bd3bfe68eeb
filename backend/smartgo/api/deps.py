"""
Shared FastAPI dependencies: caller identity, rate limiter, generation
client, chat sessions and the request-scoped trip service
"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from smartgo.core.chat.orchestrator import ChatSessionStore
from smartgo.core.generation.client import GenerationClient
from smartgo.core.settings import get_settings
from smartgo.core.trip_service import TripService
from smartgo.db.session import get_db_session

settings = get_settings()

limiter = Limiter(key_func=get_remote_address, enabled=settings.ENABLE_RATE_LIMITING)

GENERATE_LIMIT = settings.RATE_LIMIT_GENERATE
CHAT_LIMIT = settings.RATE_LIMIT_CHAT
READ_LIMIT = settings.RATE_LIMIT_READ
UPDATE_LIMIT = settings.RATE_LIMIT_UPDATE


def _parse_user_id(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        user_id = int(str(raw).strip())
    except ValueError:
        return None
    return user_id if user_id > 0 else None


async def get_optional_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    user_id: Optional[str] = Query(None),
) -> Optional[int]:
    """Caller id from the `user_id` query parameter or `X-User-Id` header"""
    return _parse_user_id(user_id) or _parse_user_id(x_user_id)


async def get_current_user_id(user_id: Optional[int] = Depends(get_optional_user_id)) -> int:
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user_id is required")
    return user_id


@lru_cache
def get_generation_client() -> GenerationClient:
    return GenerationClient(get_settings())


@lru_cache
def get_chat_store() -> ChatSessionStore:
    return ChatSessionStore(get_settings())


async def get_trip_service(
    session: AsyncSession = Depends(get_db_session),
    generator: GenerationClient = Depends(get_generation_client),
    user_id: Optional[int] = Depends(get_optional_user_id),
) -> TripService:
    return TripService(session, generator, user_id)
