import logging
from fastapi import Depends, HTTPException, Request, status
from google.oauth2 import id_token
from google.auth.transport import requests as google_requests

from chatsync.config import get_settings, Settings

TOKEN_EXPIRED = "token_expired"
INVALID_TOKEN = "invalid_token"

_request_adapter = google_requests.Request()


async def verify_token(
    request: Request,
    settings: Settings = Depends(get_settings)
) -> dict:
    """
    Verifies the Google ID token sent as ``Authorization: Bearer <token>``.

    Returns:
        The decoded token payload if valid.

    Raises:
        HTTPException: 401 if the token is invalid or expired. The detail is
                       an object whose ``code`` is ``token_expired`` for an
                       expired token, so clients can refresh and retry once.
                       403 if the Authorization header is missing or malformed.
    """
    auth_header = request.headers.get("authorization")

    if not auth_header:
        logging.warning("User authorization header missing")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authenticated: Authorization header missing",
        )

    if not auth_header.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid authorization header format",
        )

    credentials = auth_header.split(" ", 1)[1]

    try:
        # Verify the token against Google's public keys and the client audience
        idinfo = id_token.verify_oauth2_token(
            credentials,
            _request_adapter,
            settings.auth_google_client_id
        )
        logging.debug(f"Token verified successfully for: {idinfo.get('email')}")
        return idinfo

    except ValueError as e:
        # Invalid format, signature, expiry, audience mismatch, etc.
        message = str(e)
        if "Token expired" in message:
            logging.info("Rejected expired token")
            detail = {"message": "Token expired. Please sign in again.", "code": TOKEN_EXPIRED}
        else:
            logging.warning(f"Token verification failed: {message}")
            detail = {"message": f"Invalid authentication credentials: {message}", "code": INVALID_TOKEN}
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user_id(claims: dict = Depends(verify_token)) -> str:
    """The stable Google account id (``sub``) of the caller."""
    return claims["sub"]
