"""
FastAPI dependencies for authentication and collaborators.
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from ..services.gateway_client import PaymentGatewayClient
from ..tasks.dispatch import BookingSideEffects
from ..utils.auth import CallerIdentity, verify_token
from ..utils.exceptions import AuthenticationError


# Missing credentials are reported as 401 by the error handler
security = HTTPBearer(auto_error=False)


async def get_current_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CallerIdentity:
    """
    Resolve the caller from the bearer token.

    Raises:
        AuthenticationError: If the token is missing or invalid
    """
    if credentials is None:
        raise AuthenticationError("Missing bearer token")

    token_data = verify_token(credentials.credentials)
    if token_data is None or token_data.user_id is None:
        raise AuthenticationError("Could not validate credentials")

    return CallerIdentity(
        user_id=token_data.user_id,
        email=token_data.email,
        name=token_data.name,
    )


def get_gateway_client() -> PaymentGatewayClient:
    return PaymentGatewayClient()


def get_side_effects() -> BookingSideEffects:
    return BookingSideEffects()
