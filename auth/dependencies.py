"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Clients authenticate with an `Authorization: Bearer <access token>` header.
The token is validated by the TokenIssuer on app.state, then the account is
loaded from the store so a token for a since-removed account is refused.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. It may not import from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Account
from auth.results import ErrorCode


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request from its Bearer header.

    Returns the Account on success, None on any failure. Never raises --
    callers that need a hard 401 should use get_current_account().
    """
    claims = request.app.state.token_issuer.validate(bearer_token(request))
    if claims is None:
        return None
    return request.app.state.auth_store.get_account_by_id(claims.account_id)


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"message": "Authentication required.", "internalCode": int(ErrorCode.AUTHENTICATION)},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account

