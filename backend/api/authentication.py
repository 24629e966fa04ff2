import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError
from django.conf import settings
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    user_id: Optional[str]
    username: Optional[str]
    roles: list[str]
    warehouse_id: Optional[int] = None
    supplier_id: Optional[int] = None
    permissions: list[str] = field(default_factory=list)
    is_authenticated: bool = True


def _verify_jwt_with_jwks(token: str, jwks_url: str) -> dict:
    if not jwks_url:
        raise AuthenticationFailed("JWKS URL is not configured.")
    try:
        header = jwt.get_unverified_header(token)
        alg = header.get("alg")
        if not alg:
            raise AuthenticationFailed("JWT alg is missing.")
        if alg not in settings.AUTH_ALGORITHMS:
            raise AuthenticationFailed("JWT alg is not allowed.")

        signing_key = PyJWKClient(jwks_url).get_signing_key_from_jwt(token)

        kwargs = {
            "algorithms": [alg],
            "options": {
                "verify_aud": bool(settings.AUTH_AUDIENCE),
                "verify_iss": bool(settings.AUTH_ISSUER),
            },
        }
        if settings.AUTH_ISSUER:
            kwargs["issuer"] = settings.AUTH_ISSUER
        if settings.AUTH_AUDIENCE:
            kwargs["audience"] = settings.AUTH_AUDIENCE

        payload = jwt.decode(token, signing_key.key, **kwargs)
        if not isinstance(payload, dict):
            raise AuthenticationFailed("Invalid JWT payload.")
        return payload
    except (PyJWKClientError, InvalidTokenError, AuthenticationFailed, ValueError) as exc:
        logger.warning("JWT verification failed: %s", exc)
        if isinstance(exc, AuthenticationFailed):
            raise
        raise AuthenticationFailed("Invalid bearer token.") from exc


def _parse_roles(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(role) for role in value]
    if isinstance(value, str):
        return [role.strip() for role in value.split(",") if role.strip()]
    return [str(value)]


def _parse_scope_id(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer scope claim: %r", value)
        return None


def _claim(payload: dict, claim_name: str):
    if not claim_name:
        return None
    return payload.get(claim_name)


class LegacyCompatAuthentication(BaseAuthentication):
    """
    Dev principal from settings when DEV_AUTH_ENABLED, otherwise a bearer JWT
    verified against the configured JWKS endpoint.
    """

    def authenticate(self, request) -> Optional[Tuple[Principal, None]]:
        if settings.DEV_AUTH_ENABLED:
            principal = Principal(
                user_id=str(settings.DEV_AUTH_USER_ID),
                username=str(settings.DEV_AUTH_USER_ID),
                roles=list(settings.DEV_AUTH_ROLES),
                warehouse_id=getattr(settings, "DEV_AUTH_WAREHOUSE_ID", None),
                supplier_id=getattr(settings, "DEV_AUTH_SUPPLIER_ID", None),
                permissions=list(settings.DEV_AUTH_PERMISSIONS),
            )
            return principal, None

        if not settings.AUTH_ENABLED:
            return None

        auth_header = request.META.get("HTTP_AUTHORIZATION", "")
        if not auth_header.startswith("Bearer "):
            raise AuthenticationFailed("Missing bearer token.")

        token = auth_header.replace("Bearer ", "", 1).strip()
        if not token:
            raise AuthenticationFailed("Missing bearer token.")

        payload = _verify_jwt_with_jwks(token, settings.AUTH_JWKS_URL)

        user_id = _claim(payload, settings.AUTH_USER_ID_CLAIM)
        username = _claim(payload, settings.AUTH_USERNAME_CLAIM)

        principal = Principal(
            user_id=str(user_id) if user_id is not None else None,
            username=str(username) if username is not None else None,
            roles=_parse_roles(_claim(payload, settings.AUTH_ROLES_CLAIM)),
            warehouse_id=_parse_scope_id(_claim(payload, settings.AUTH_WAREHOUSE_CLAIM)),
            supplier_id=_parse_scope_id(_claim(payload, settings.AUTH_SUPPLIER_CLAIM)),
        )
        return principal, None

    def authenticate_header(self, request) -> str:
        return "Bearer"
