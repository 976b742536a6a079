"""
Token helpers for API tests.

Tokens are signed with the secret conftest puts in ``JWT_SECRET``.
"""
import jwt

from app.features.users.models import User


def token_for(user: User) -> str:
    return jwt.encode({"sub": user.id}, "test-secret", algorithm="HS256")


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}
