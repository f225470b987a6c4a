from __future__ import annotations

import base64
import json
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

import jwt
import requests
from fastapi import Depends, Request

from ott_billing.core.errors import AuthenticationError
from ott_billing.core.settings import S
from ott_billing.services import accounts


def _cognito_enabled() -> bool:
    return bool(S.cognito_user_pool_id and S.cognito_app_client_id)


def _cognito_issuer() -> str:
    region = S.cognito_region or S.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{S.cognito_user_pool_id}"


@lru_cache(maxsize=1)
def _cognito_jwks() -> Dict[str, Any]:
    url = f"{_cognito_issuer()}/.well-known/jwks.json"
    resp = requests.get(url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _resolve_cognito_key(kid: str) -> Dict[str, Any]:
    for key in _cognito_jwks().get("keys", []):
        if key.get("kid") == kid:
            return key
    raise AuthenticationError("Unknown signing key id")


def _decode_cognito_token(token: str) -> Dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid token header") from exc

    key = _resolve_cognito_key(header.get("kid", ""))
    public_key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(key))
    # Access tokens carry client_id instead of aud, so audience is checked below.
    try:
        payload = jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            issuer=_cognito_issuer(),
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid token") from exc

    expected_use = S.cognito_expected_token_use
    if expected_use and payload.get("token_use") != expected_use:
        raise AuthenticationError("Unexpected token use")
    client_id = payload.get("client_id") or payload.get("aud")
    if client_id != S.cognito_app_client_id:
        raise AuthenticationError("Token issued for another client")
    return payload


def _decode_jwt_claims(token: str) -> Optional[Dict[str, Any]]:
    if token.count(".") != 2:
        return None
    _, payload, _ = token.split(".", 2)
    if not payload:
        return None
    padding = "=" * (-len(payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload + padding).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Invalid Authorization header")
    return token.strip()


def _identity(request: Request) -> Tuple[str, Dict[str, Any]]:
    if _cognito_enabled():
        token = extract_bearer_token(request.headers.get("authorization"))
        claims = _decode_cognito_token(token)
        subject = claims.get("sub") or claims.get("cognito:username") or claims.get("username")
        if not subject:
            raise AuthenticationError("Token missing subject")
        return str(subject), claims

    # Dev fallback: X-Account-Id header, or Bearer <account_id | unsigned jwt>.
    fallback = request.headers.get("x-account-id")
    if fallback:
        return fallback, {}
    token = extract_bearer_token(request.headers.get("authorization"))
    claims = _decode_jwt_claims(token) or {}
    subject = claims.get("sub")
    if isinstance(subject, str) and subject.strip():
        return subject, claims
    return token, {}


async def get_authenticated_account_id(request: Request) -> str:
    """Resolve the caller's account id from the request credentials."""
    account_id, claims = _identity(request)
    request.state.claims = claims
    return account_id


async def require_account(
    request: Request,
    account_id: str = Depends(get_authenticated_account_id),
) -> Dict[str, str]:
    """Authenticated caller with a provisioned account row."""
    if not accounts.get_account(account_id):
        claims = getattr(request.state, "claims", None) or {}
        accounts.create_account(
            account_id,
            email=str(claims.get("email") or ""),
            display_name=str(claims.get("name") or ""),
        )
    return {"account_id": account_id}
