from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Literal

from schemas.session import ConsoleUser
from services.access_service import DEFAULT_ROLE, normalize_role
from services.lending_api import AuthApi
from services.session_store import SessionStore


TOKEN_ID_CLAIMS = ("id", "sub", "userId", "nameid")
TOKEN_NAME_CLAIMS = ("nombre", "name", "unique_name", "given_name")
TOKEN_EMAIL_CLAIMS = ("email", "unique_name", "upn")
TOKEN_ROLE_CLAIMS = (
    "rol",
    "role",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/role",
)

AUTH_LOGGER = logging.getLogger("lending_console.auth")

LoginSource = Literal["usuario", "user", "token", "fallback"]


class LoginError(RuntimeError):
    pass


@dataclass(frozen=True)
class ResolvedLogin:
    token: str
    user: ConsoleUser
    source: LoginSource

    @property
    def is_degraded(self) -> bool:
        return self.source == "fallback" or self.user.id == 0


def synthetic_identity_allowed() -> bool:
    raw = str(os.environ.get("CONSOLE_ALLOW_SYNTHETIC_IDENTITY", "true")).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def decode_token_claims(token: str) -> dict[str, Any] | None:
    try:
        segment = token.split(".")[1]
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        claims = json.loads(raw.decode("utf-8"))
    except (IndexError, ValueError) as exc:
        AUTH_LOGGER.warning("Could not decode bearer token claims: %s", exc)
        return None
    if not isinstance(claims, dict):
        AUTH_LOGGER.warning("Bearer token claims are not an object")
        return None
    return claims


def _first_present(source: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = source.get(key)
        if value:
            return value
    return None


def _coerce_id(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return 0


def _local_part(email: str) -> str:
    return (email or "").split("@")[0]


def _text(raw: Any) -> str:
    if raw is None:
        return ""
    return str(raw).strip()


def _user_from_profile(profile: dict[str, Any], submitted_email: str) -> dict[str, Any]:
    return {
        "id": _coerce_id(profile.get("id")),
        "name": _text(profile.get("nombre") or profile.get("name")) or _local_part(submitted_email),
        "email": _text(profile.get("email")) or submitted_email,
        "role": normalize_role(profile.get("rol") or profile.get("role")),
    }


def _user_from_claims(claims: dict[str, Any], submitted_email: str) -> dict[str, Any]:
    return {
        "id": _coerce_id(_first_present(claims, TOKEN_ID_CLAIMS)),
        "name": _text(_first_present(claims, TOKEN_NAME_CLAIMS)) or _local_part(submitted_email),
        "email": _text(_first_present(claims, TOKEN_EMAIL_CLAIMS)) or submitted_email,
        "role": normalize_role(_first_present(claims, TOKEN_ROLE_CLAIMS)),
    }


def _synthetic_user(submitted_email: str) -> dict[str, Any]:
    return {
        "id": 0,
        "name": _local_part(submitted_email),
        "email": submitted_email,
        "role": DEFAULT_ROLE,
    }


def resolve_login(payload: dict[str, Any], submitted_email: str) -> ResolvedLogin:
    """Turn a credential-exchange response into a token and a session user.

    Sources are tried in a fixed order: the ``usuario`` object, the ``user``
    object, the claims inside the bearer token, and finally a stand-in built
    from the submitted email. The first source present wins even when a later
    one would disagree.
    """
    token = payload.get("token") if isinstance(payload, dict) else None
    if not isinstance(token, str) or not token.strip():
        raise LoginError("The server response does not contain a valid token")

    source: LoginSource
    if isinstance(payload.get("usuario"), dict):
        source = "usuario"
        fields = _user_from_profile(payload["usuario"], submitted_email)
    elif isinstance(payload.get("user"), dict):
        source = "user"
        fields = _user_from_profile(payload["user"], submitted_email)
    else:
        claims = decode_token_claims(token)
        if claims is not None:
            source = "token"
            fields = _user_from_claims(claims, submitted_email)
        else:
            source = "fallback"
            fields = _synthetic_user(submitted_email)

    if not fields["email"]:
        AUTH_LOGGER.error("Login resolved no email source=%s", source)
        raise LoginError("Unable to determine the user's identity. Please contact an administrator.")
    return ResolvedLogin(token=token, user=ConsoleUser(**fields), source=source)


def perform_login(
    auth_api: AuthApi,
    store: SessionStore,
    email: str,
    password: str,
    *,
    remember: bool = False,
    allow_synthetic: bool | None = None,
) -> ResolvedLogin:
    submitted_email = (email or "").strip()
    payload = auth_api.login(submitted_email, password)
    resolved = resolve_login(payload, submitted_email)

    if resolved.is_degraded:
        if allow_synthetic is None:
            allow_synthetic = synthetic_identity_allowed()
        AUTH_LOGGER.warning(
            "Login produced a degraded identity email=%s source=%s id=%s allowed=%s",
            resolved.user.email,
            resolved.source,
            resolved.user.id,
            allow_synthetic,
        )
        if not allow_synthetic:
            raise LoginError("Your account details could not be verified. Please contact an administrator.")

    store.write(resolved.token, resolved.user, remember=remember)
    AUTH_LOGGER.info("Login success email=%s role=%s source=%s", resolved.user.email, resolved.user.role, resolved.source)
    return resolved
