"""
FastAPI dependencies for actor authentication and authorization.

This module provides dependency functions for bearer token validation,
role-based access control, database session and Redis client injection.
"""

from dataclasses import dataclass
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmadelivery.cache.redis_client import RedisClient, get_redis_client
from pharmadelivery.core.logging import get_logger, set_actor
from pharmadelivery.core.security import TokenError, decode_token
from pharmadelivery.database.connection import get_db
from pharmadelivery.services.orders.enums import ActorRole

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    """Authenticated party acting on orders."""

    id: str
    role: ActorRole
    deliveryman_id: Optional[UUID] = None
    pharmacy_unit_id: Optional[str] = None


def actor_from_token(token: str) -> Actor:
    """
    Build an actor from a bearer token.

    Raises:
        TokenError: If the token or its claims are invalid
    """
    payload = decode_token(token)

    try:
        role = ActorRole.from_string(str(payload["role"]))
    except ValueError as e:
        raise TokenError("Unknown actor role", code="INVALID_ROLE") from e

    deliveryman_id = payload.get("deliveryman_id")
    if deliveryman_id is not None:
        try:
            deliveryman_id = UUID(str(deliveryman_id))
        except ValueError as e:
            raise TokenError("Invalid courier identifier", code="INVALID_CLAIM") from e

    return Actor(
        id=str(payload["sub"]),
        role=role,
        deliveryman_id=deliveryman_id,
        pharmacy_unit_id=payload.get("pharmacy_unit_id"),
    )


async def get_current_actor(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Actor:
    """
    Validate bearer token and return the acting party.

    Raises:
        HTTPException: 401 if token is missing or invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        actor = actor_from_token(credentials.credentials)
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code, error=str(e))
        raise credentials_exception from e

    set_actor(actor.id, actor.role.value)
    return actor


def require_role(*allowed_roles: ActorRole):
    """
    Create a dependency that requires specific actor roles.

    Args:
        *allowed_roles: Roles allowed to call the endpoint

    Returns:
        Callable: Dependency function that validates the actor role

    Example:
        @router.post("/orders", dependencies=[Depends(require_role(ActorRole.ADMIN))])
        async def create_order():
            ...
    """

    async def role_checker(
        actor: Annotated[Actor, Depends(get_current_actor)],
    ) -> Actor:
        if actor.role not in allowed_roles:
            logger.warning(
                "Access denied: Insufficient permissions",
                actor_id=actor.id,
                actor_role=actor.role.value,
                required_roles=[role.value for role in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return role_checker


async def get_optional_redis() -> Optional[RedisClient]:
    """
    Redis client for change notifications and counters.

    Writes still succeed while Redis is down; subscribers resync once it
    is back.
    """
    try:
        return await get_redis_client()
    except (RedisError, ConnectionError) as e:
        logger.error("Redis unavailable", error=str(e))
        return None


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
RedisDep = Annotated[Optional[RedisClient], Depends(get_optional_redis)]

StaffActor = Annotated[
    Actor,
    Depends(require_role(ActorRole.ADMIN, ActorRole.MANAGER, ActorRole.SYSTEM)),
]
TransitionActor = Annotated[
    Actor,
    Depends(
        require_role(ActorRole.ADMIN, ActorRole.MANAGER, ActorRole.COURIER, ActorRole.SYSTEM)
    ),
]
ReactivationActor = Annotated[
    Actor,
    Depends(require_role(ActorRole.ADMIN, ActorRole.MANAGER)),
]
ReviewActor = Annotated[
    Actor,
    Depends(require_role(ActorRole.CUSTOMER, ActorRole.ADMIN, ActorRole.MANAGER)),
]
CourierActor = Annotated[Actor, Depends(require_role(ActorRole.COURIER))]
RunManagerActor = Annotated[
    Actor,
    Depends(require_role(ActorRole.COURIER, ActorRole.ADMIN)),
]
