"""
Encrypted cookie sessions.

The whole session lives in the client's cookie: a JSON object encrypted and
authenticated with Fernet under a key derived from SESSION_SECRET. There is no
server-side store, so sessions survive restarts only as long as the secret
stays the same, and the encoded cookie must stay under the 4KB browser limit.
"""

import base64
import json
import logging
from typing import Any, Dict, MutableMapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session"
SESSION_MAX_AGE = 7 * 24 * 60 * 60  # 7 days, refreshed on every response
MAX_COOKIE_SIZE = 4096

# Scope key holding a Set-Cookie value that could not be attached because the
# inner application raised before starting its response.
PENDING_COOKIE_SCOPE_KEY = "webstarter.pending_session_cookie"

# Scope key holding a callable that encodes the session as it stands, for
# outer stages that answer while the handler is still running.
CURRENT_COOKIE_SCOPE_KEY = "webstarter.current_session_cookie"

_KDF_SALT = b"webstarter.session.v1"
_KDF_ITERATIONS = 100_000


class SessionDecodeError(Exception):
    """Raised when a session cookie cannot be decrypted or parsed"""
    pass


class SessionCodec:
    """Encrypts and signs session dictionaries into cookie-safe strings."""

    def __init__(self, secret_key: str, max_age: int = SESSION_MAX_AGE):
        self.max_age = max_age
        self.cipher = self._create_cipher(secret_key)

    @staticmethod
    def _create_cipher(secret_key: str) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KDF_SALT,
            iterations=_KDF_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))
        return Fernet(key)

    def encode(self, data: Dict[str, Any]) -> str:
        payload = json.dumps(data, separators=(",", ":")).encode("utf-8")
        return self.cipher.encrypt(payload).decode("ascii")

    def decode(self, token: str) -> Dict[str, Any]:
        """
        Decrypt a cookie value.

        Raises:
            SessionDecodeError: If the token is tampered with, expired or malformed
        """
        try:
            payload = self.cipher.decrypt(token.encode("ascii"), ttl=self.max_age)
            data = json.loads(payload)
        except (InvalidToken, UnicodeError, ValueError) as e:
            raise SessionDecodeError(type(e).__name__) from e
        if not isinstance(data, dict):
            raise SessionDecodeError("session payload is not an object")
        return data


class SessionMiddleware:
    """
    Attach ``request.session`` and write the cookie back on every response.

    The cookie is re-encoded whether or not the handler changed the session,
    which also refreshes its expiry. A cookie that fails to decode is replaced
    by an empty session instead of failing the request.
    """

    def __init__(
        self,
        app: ASGIApp,
        secret_key: str,
        session_cookie: str = SESSION_COOKIE_NAME,
        max_age: int = SESSION_MAX_AGE,
        path: str = "/",
        same_site: str = "lax",
        https_only: bool = False,
    ) -> None:
        self.app = app
        self.codec = SessionCodec(secret_key, max_age=max_age)
        self.session_cookie = session_cookie
        self.max_age = max_age
        self.path = path
        self.security_flags = "httponly; samesite=" + same_site
        if https_only:
            self.security_flags += "; secure"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        scope["session"] = self.load_session(connection.cookies.get(self.session_cookie))
        cookie_sent = False

        def current_cookie() -> Optional[str]:
            if cookie_sent:
                return None
            return self.cookie_header(dict(scope["session"]))

        scope[CURRENT_COOKIE_SCOPE_KEY] = current_cookie

        async def send_wrapper(message: Message) -> None:
            nonlocal cookie_sent
            if message["type"] == "http.response.start":
                header_value = self.cookie_header(scope["session"])
                if header_value is not None:
                    headers = MutableHeaders(scope=message)
                    headers.append("Set-Cookie", header_value)
                cookie_sent = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            if not cookie_sent:
                header_value = self.cookie_header(scope["session"])
                if header_value is not None:
                    scope[PENDING_COOKIE_SCOPE_KEY] = header_value

    def load_session(self, cookie_value: Optional[str]) -> Dict[str, Any]:
        if not cookie_value:
            return {}
        try:
            return self.codec.decode(cookie_value)
        except SessionDecodeError as e:
            logger.warning("session decode error, creating new session", extra={"error": str(e)})
            return {}

    def cookie_header(self, session: Dict[str, Any]) -> Optional[str]:
        try:
            data = self.codec.encode(session)
        except (TypeError, ValueError) as e:
            logger.error("failed to save session", extra={"error": str(e)})
            return None
        if len(data) > MAX_COOKIE_SIZE:
            logger.error(
                "failed to save session",
                extra={"error": "session cookie exceeds size limit", "size": len(data)},
            )
            return None
        return "{}={}; path={}; Max-Age={}; {}".format(
            self.session_cookie,
            data,
            self.path,
            self.max_age,
            self.security_flags,
        )


def stash_session_cookie(scope: MutableMapping[str, Any]) -> None:
    """Snapshot the cookie of a request whose response an outer stage is about to send."""
    current_cookie = scope.get(CURRENT_COOKIE_SCOPE_KEY)
    if current_cookie is None or PENDING_COOKIE_SCOPE_KEY in scope:
        return
    header_value = current_cookie()
    if header_value is not None:
        scope[PENDING_COOKIE_SCOPE_KEY] = header_value


def apply_pending_session_cookie(scope: MutableMapping[str, Any], response: Response) -> None:
    """Attach a session cookie left behind by a request that ended in an exception."""
    header_value = scope.pop(PENDING_COOKIE_SCOPE_KEY, None)
    if header_value is not None:
        response.headers.append("Set-Cookie", header_value)
