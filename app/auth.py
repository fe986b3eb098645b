"""Bearer JWT auth middleware; attaches the principal to ``request.state``."""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


_JWKS_CACHE: Dict[str, Any] = {"keys": None, "fetched_at": 0.0, "ttl": 600.0}
_LOCAL_ORIGIN_RE = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_PUBLIC_PATHS = {"/health"}

logger = logging.getLogger("forge.auth")


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def _attach_local_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and _LOCAL_ORIGIN_RE.match(origin):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Vary", "Origin")
    return response


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    if not force and _JWKS_CACHE["keys"] and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE["keys"] = data
    _JWKS_CACHE["fetched_at"] = now
    return data


def _find_jwk(jwks: dict, kid: str | None) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def verify_token(token: str, secret: str | None, jwks_url: str | None, audience: str | None) -> dict:
    options = {"verify_aud": audience is not None}
    if secret:
        return jwt.decode(token, secret, algorithms=["HS256"], audience=audience, options=options)
    if not jwks_url:
        raise JWTError("No verification key configured")
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_jwk(_fetch_jwks(jwks_url), kid)
    if key is None:
        key = _find_jwk(_fetch_jwks(jwks_url, force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")
    return jwt.decode(token, key, algorithms=[headers.get("alg", "RS256")], audience=audience, options=options)


def principal_from_claims(claims: dict) -> dict:
    sub = claims.get("sub", claims.get("id"))
    try:
        principal_id = int(str(sub))
    except (TypeError, ValueError):
        principal_id = None
    return {
        "id": principal_id,
        "role": claims.get("role"),
        "email": claims.get("email"),
        "claims": claims,
    }


def dev_principal() -> dict:
    role = os.getenv("FORGE_DEV_ROLE", "").strip() or "Admin"
    return {"id": 1, "role": role, "email": None, "claims": {}}


class JwtAuthMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        secret: str | None = None,
        jwks_url: str | None = None,
        audience: str | None = None,
    ) -> None:
        super().__init__(app)
        self._secret = secret
        self._jwks_url = jwks_url
        self._audience = audience

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request.state.principal = None
        if _truthy(os.getenv("FORGE_DISABLE_AUTH")):
            request.state.principal = dev_principal()
            return await call_next(request)
        if request.method == "OPTIONS" or request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.debug("auth_missing_token path=%s", request.url.path)
            return await call_next(request)

        try:
            claims = verify_token(token, self._secret, self._jwks_url, self._audience)
        except (JWTError, httpx.HTTPError) as exc:
            logger.warning(
                "auth_invalid_token path=%s audience=%s error=%s",
                request.url.path,
                self._audience,
                exc,
            )
            return _attach_local_cors(
                request,
                JSONResponse(
                    {
                        "ok": False,
                        "errors": [
                            {
                                "code": "AUTH_INVALID_TOKEN",
                                "message": "Invalid bearer token",
                                "path": "Authorization",
                                "detail": {"error": str(exc)},
                            }
                        ],
                        "warnings": [],
                    },
                    status_code=401,
                ),
            )

        request.state.principal = principal_from_claims(claims)
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
