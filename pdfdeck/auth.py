"""HMAC request signing, timestamp freshness and anti-replay checks."""

import base64
import hashlib
import hmac
import time
from typing import Any, Callable, Coroutine, Mapping

import structlog
from fastapi import Request, Response
from fastapi.routing import APIRoute

from pdfdeck.config import Settings
from pdfdeck.errors import AuthError, NonceUnavailableError
from pdfdeck.nonces import NonceStore, NonceStoreUnavailable

logger = structlog.get_logger()

TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_HEADER = "X-Signature"
KEY_ID_HEADER = "X-Key-Id"
NONCE_HEADER = "X-Nonce"

BODYLESS_METHODS = frozenset({"GET", "HEAD"})


def now_ms() -> int:
    return int(time.time() * 1000)


def canonical_string(
    method: str,
    path: str,
    timestamp: int | str,
    body: bytes = b"",
    nonce: str | None = None,
) -> bytes:
    """
    Build the string covered by the signature.

    METHOD \\n PATH \\n TIMESTAMP \\n RAW_BODY [\\n NONCE]. The body is empty
    for GET/HEAD and otherwise the exact bytes on the wire.
    """
    method = method.upper()
    raw_body = b"" if method in BODYLESS_METHODS else body
    payload = f"{method}\n{path}\n{timestamp}\n".encode("utf-8") + raw_body
    if nonce:
        payload += b"\n" + nonce.encode("utf-8")
    return payload


def sign(
    secret: str,
    method: str,
    path: str,
    timestamp: int | str,
    body: bytes = b"",
    nonce: str | None = None,
) -> str:
    """Base64 HMAC-SHA256 signature of a request."""
    digest = hmac.new(
        secret.encode("utf-8"),
        canonical_string(method, path, timestamp, body, nonce),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class _Rejected(Exception):
    """Internal rejection carrying the reason for server-side logs."""


class RequestAuthenticator:
    """Verifies signed requests. Every failure surfaces as AUTH_FAILED."""

    def __init__(
        self,
        secrets: Mapping[str, str],
        nonce_store: NonceStore | None,
        max_skew_seconds: int = 300,
        anti_replay_enabled: bool = True,
        fail_open: bool = True,
        nonce_ttl_seconds: int = 300,
    ) -> None:
        """
        Initialize the authenticator.

        Args:
            secrets: Key id to secret, current key first
            nonce_store: Replay store, required when anti-replay is enabled
            max_skew_seconds: Symmetric clock-skew tolerance
            anti_replay_enabled: Require and record X-Nonce
            fail_open: Accept requests when the nonce store is unavailable
            nonce_ttl_seconds: Lifetime of a recorded nonce
        """
        if anti_replay_enabled and nonce_store is None:
            raise ValueError("anti-replay requires a nonce store")
        self._secrets = {key_id: s for key_id, s in secrets.items() if s}
        self._nonce_store = nonce_store
        self._max_skew_ms = max_skew_seconds * 1000
        self._anti_replay = anti_replay_enabled
        self._fail_open = fail_open
        self._nonce_ttl = nonce_ttl_seconds

    @classmethod
    def from_settings(
        cls, settings: Settings, nonce_store: NonceStore | None
    ) -> "RequestAuthenticator":
        secrets = {settings.hmac_key_id_current: settings.hmac_secret_current}
        if settings.hmac_secret_previous:
            secrets[settings.hmac_key_id_previous] = settings.hmac_secret_previous
        return cls(
            secrets=secrets,
            nonce_store=nonce_store,
            max_skew_seconds=settings.auth_max_skew_seconds,
            anti_replay_enabled=settings.anti_replay_enabled,
            fail_open=settings.anti_replay_fail_open,
            nonce_ttl_seconds=settings.nonce_ttl_seconds,
        )

    async def verify(
        self,
        method: str,
        path: str,
        body: bytes,
        headers: Mapping[str, str],
        now: int | None = None,
    ) -> None:
        """
        Verify a request or raise.

        Raises:
            AuthError: Any timestamp, signature or nonce problem
            NonceUnavailableError: Nonce store down and fail-closed configured
        """
        current = now_ms() if now is None else now
        try:
            timestamp = self._check_timestamp(headers.get(TIMESTAMP_HEADER), current)
            nonce = headers.get(NONCE_HEADER) or None
            if self._anti_replay and not nonce:
                raise _Rejected("nonce required")
            self._check_signature(
                canonical_string(method, path, timestamp, body, nonce),
                headers.get(SIGNATURE_HEADER) or "",
                headers.get(KEY_ID_HEADER) or None,
            )
            if self._anti_replay:
                await self._check_nonce(nonce, current)
        except _Rejected as e:
            logger.warning("Request authentication failed",
                           reason=str(e), method=method, path=path)
            raise AuthError()

    def _check_timestamp(self, header: str | None, current: int) -> str:
        if not header:
            raise _Rejected("timestamp missing")
        try:
            timestamp = int(header)
        except ValueError:
            raise _Rejected("timestamp malformed")
        if timestamp <= 0 or abs(current - timestamp) > self._max_skew_ms:
            raise _Rejected("timestamp outside window")
        return header

    def _candidate_secrets(self, key_id: str | None) -> list[str]:
        if key_id is None:
            return list(self._secrets.values())
        secret = self._secrets.get(key_id)
        if secret is None:
            raise _Rejected("unknown key id")
        return [secret]

    def _check_signature(self, payload: bytes, signature: str, key_id: str | None) -> None:
        provided = signature.encode("utf-8")
        matched = False
        for secret in self._candidate_secrets(key_id):
            expected = base64.b64encode(
                hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
            )
            # Check every candidate so timing does not reveal which key matched
            matched = hmac.compare_digest(provided, expected) or matched
        if not matched:
            raise _Rejected("signature mismatch")

    async def _check_nonce(self, nonce: str, current: int) -> None:
        key = f"nonce:{nonce}"
        try:
            fresh = await self._nonce_store.check_and_record(key, self._nonce_ttl, current)
        except NonceStoreUnavailable as e:
            if self._fail_open:
                logger.warning("Nonce store unavailable, failing open", error=str(e))
                return
            logger.error("Nonce store unavailable, failing closed", error=str(e))
            raise NonceUnavailableError()
        if not fresh:
            raise _Rejected("replay detected")


async def require_signed_request(request: Request) -> None:
    """Verify the raw request body and headers against the authenticator."""
    authenticator: RequestAuthenticator = request.app.state.services.authenticator
    body = await request.body()
    await authenticator.verify(
        request.method,
        request.url.path,
        body,
        request.headers,
    )


class SignedRoute(APIRoute):
    """
    Route class that authenticates before FastAPI parses the body.

    Dependencies run after body validation, so an unsigned request with a
    malformed body would otherwise be answered with 400 instead of 401.
    The body read here is cached on the request and reused by the handler.
    """

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        route_handler = super().get_route_handler()

        async def signed_route_handler(request: Request) -> Response:
            await require_signed_request(request)
            return await route_handler(request)

        return signed_route_handler
