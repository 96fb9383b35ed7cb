import hmac
from typing import Callable, Optional

from fastapi import Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.db.models import UserRole
from app.utils.errors import AuthenticationError, AuthorizationError
from app.utils.logging import get_logger

logger = get_logger()

USER_ID_HEADER = "X-User-ID"
USER_ROLE_HEADER = "X-User-Role"
GATEWAY_SECRET_HEADER = "X-Gateway-Secret"


class AuthState:
    """Authentication state to be stored in request.state"""

    def __init__(self, user_id: str, role: UserRole, is_authenticated: bool = True):
        self.user_id = user_id
        self.role = role
        self.is_authenticated = is_authenticated


class GatewayAuthMiddleware(BaseHTTPMiddleware):
    """
    Trusts the identity asserted by the upstream gateway.

    The service must only be reachable through the gateway. With
    `shared_secret` set, identity headers are ignored unless the request also
    carries the matching `X-Gateway-Secret` header.

    Requests without identity headers pass through unauthenticated; the
    route dependencies decide whether that is acceptable.
    """

    def __init__(self, app, shared_secret: Optional[str] = None):
        super().__init__(app)
        self.shared_secret = shared_secret

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.auth = self._read_identity(request)
        return await call_next(request)

    def _from_gateway(self, request: Request) -> bool:
        if not self.shared_secret:
            return True
        presented = request.headers.get(GATEWAY_SECRET_HEADER, "")
        return hmac.compare_digest(presented.encode(), self.shared_secret.encode())

    def _read_identity(self, request: Request) -> Optional[AuthState]:
        user_id = request.headers.get(USER_ID_HEADER)
        role = request.headers.get(USER_ROLE_HEADER)
        if not user_id or not role:
            return None

        if not self._from_gateway(request):
            logger.warning(
                f"Ignoring identity headers for user {user_id}: gateway secret missing or wrong"
            )
            return None

        try:
            return AuthState(user_id=user_id, role=UserRole(role.lower()))
        except ValueError:
            logger.warning(f"Ignoring unknown role '{role}' for user {user_id}")
            return None


# Dependency for getting current user from request state
def get_current_user(request: Request) -> AuthState:
    """Dependency to get current authenticated user from request state"""
    auth_state = getattr(request.state, "auth", None)

    if not auth_state or not auth_state.is_authenticated:
        raise AuthenticationError("Not authenticated", "NOT_AUTHENTICATED")

    return auth_state


# Dependency for requiring specific roles
def require_roles(*allowed_roles: UserRole):
    """Create dependency that requires one of the given roles"""

    def check_role(current_user: AuthState = Depends(get_current_user)) -> AuthState:
        if current_user.role not in allowed_roles:
            raise AuthorizationError(
                "Insufficient permissions", "INSUFFICIENT_PERMISSIONS"
            )
        return current_user

    return check_role


require_administrator = require_roles(UserRole.ADMINISTRATOR)
