"""
The broker's own browser session: a bearer token in an HttpOnly cookie.
"""
from fastapi import Request, Response

from oidc_broker.config import ACCESS_TOKEN_TTL_SECONDS

COOKIE_NAME = "auth_token"


def set_session_cookie(response: Response, token: str, max_age: int = ACCESS_TOKEN_TTL_SECONDS) -> None:
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.set_cookie(
        COOKIE_NAME,
        "",
        max_age=0,
        path="/",
        httponly=True,
        secure=True,
        samesite="lax",
    )


def get_session_token(request: Request) -> str | None:
    return request.cookies.get(COOKIE_NAME) or None


def get_request_token(request: Request) -> str | None:
    """Bearer token from the Authorization header, falling back to the session cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        if token:
            return token
    return get_session_token(request)
