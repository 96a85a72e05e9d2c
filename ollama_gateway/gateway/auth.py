from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass

import bcrypt
from fastapi import Request, status
from fastapi.responses import JSONResponse

from ollama_gateway.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when basic auth is required but no users are configured."""


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


def parse_basic_credentials(header: str) -> tuple[str, str] | None:
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


def _check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class Authenticator:
    def __init__(self, settings: Settings):
        self.required = settings.basic_auth_enabled
        self.realm = settings.basic_auth_realm
        self.users = settings.basic_auth_users

        if self.required and not self.users:
            raise AuthConfigurationError(
                "Basic auth is required, but BASIC_AUTH_HASHES has no user:hash pairs.",
            )

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        credentials = parse_basic_credentials(request.headers.get("authorization", ""))
        if credentials is None:
            return self._unauthorized("Missing Basic credentials.")

        username, password = credentials
        password_hash = self.users.get(username)
        if password_hash is None:
            return self._unauthorized("Invalid username or password.")

        if not await asyncio.to_thread(_check_password, password, password_hash):
            return self._unauthorized("Invalid username or password.")

        request.state.auth = AuthResult(method="basic", principal=username)
        return None

    def _unauthorized(self, message: str) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": f'Basic realm="{self.realm}"'},
            content={"success": False, "message": message},
        )
