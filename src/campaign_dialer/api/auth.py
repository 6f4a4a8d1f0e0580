"""JWT authentication for the REST control endpoints.

The provider webhook is unauthenticated and uses signature validation
instead. The realtime socket authenticates in its handshake.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from campaign_dialer.core.exceptions import AuthenticationError
from campaign_dialer.core.security import Identity, decode_identity

# HTTP Bearer security scheme
security = HTTPBearer(auto_error=False)


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> Identity:
    """Dependency resolving the bearer token to an identity.

    Raises:
        HTTPException 401: missing, expired or invalid token
    """
    services = request.app.state.services
    token = credentials.credentials if credentials else None
    try:
        return decode_identity(
            token,
            secret=services.jwt_secret,
            algorithm=services.settings.jwt_algorithm,
        )
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def require_role(*roles: str):
    """Create a dependency that requires one of ``roles``.

    Usage:
        @router.post("/dispatch/start")
        async def start(identity: Identity = Depends(require_role("admin"))):
            ...
    """
    async def role_checker(
        identity: Identity = Depends(get_current_identity),
    ) -> Identity:
        if identity.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role must be one of {list(roles)}. Current role: '{identity.role}'",
            )
        return identity

    return role_checker


require_elevated = require_role("admin", "supervisor")
require_admin = require_role("admin")
