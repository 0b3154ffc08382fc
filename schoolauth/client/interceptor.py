"""HTTP client that keeps a session alive across access-token expiry.

Implementation notes:
- Every call walks ``SENT -> AUTH_FAILED -> REFRESHING -> REPLAYED -> DONE``
  (or ends in ``FAILED``); a call is replayed at most once.
- All calls that fail authorization while a refresh is pending await the same
  task, so one client session never has two refresh requests outstanding.
- ``X-New-Access-Token``/``X-New-Refresh-Token`` are honoured on every
  response, not only after a 401.
- A failed or timed-out refresh ends the session; nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import httpx
from jose import JWTError, jwt

from schoolauth.client.session_manager import ClientSessionManager, PersistedSession, Tokens
from schoolauth.core.errors import AuthError, NetworkFailure, SessionEnded, error_for_code
from schoolauth.utils.datetime import utcnow
from schoolauth.utils.redaction import token_fingerprint

logger = logging.getLogger("schoolauth.client.interceptor")

REFRESH_TOKEN_HEADER = "X-Refresh-Token"
NEW_ACCESS_TOKEN_HEADER = "X-New-Access-Token"
NEW_REFRESH_TOKEN_HEADER = "X-New-Refresh-Token"

AUTH_ENDPOINTS = ("/auth/signin", "/auth/refresh-token", "/auth/setup-first-password", "/auth/logout")


class CallState(str, Enum):
    SENT = "sent"
    AUTH_FAILED = "auth_failed"
    REFRESHING = "refreshing"
    REPLAYED = "replayed"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class CallTrace:
    method: str
    path: str
    states: list[CallState] = field(default_factory=list)

    def advance(self, state: CallState) -> None:
        self.states.append(state)

    @property
    def state(self) -> CallState | None:
        return self.states[-1] if self.states else None


def _error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("code") if isinstance(body, dict) else None


def _error_detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    detail = body.get("detail") if isinstance(body, dict) else None
    return detail if isinstance(detail, str) else None


class AuthenticatedClient:
    """Wraps ``httpx.AsyncClient`` with bearer auth and coalesced token refresh."""

    def __init__(
        self,
        manager: ClientSessionManager,
        *,
        base_url: str = "http://localhost:8000",
        api_prefix: str = "/api",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        courtesy_window_seconds: int = 120,
        on_session_ended: Callable[[str], Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.manager = manager
        self.api_prefix = api_prefix.rstrip("/")
        self.courtesy_window_seconds = courtesy_window_seconds
        self.on_session_ended = on_session_ended
        self.history: deque[CallTrace] = deque(maxlen=100)
        self._clock = clock
        # Ordinary calls and the refresh call share the same timeout.
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._refresh_task: asyncio.Task[str] | None = None
        self._courtesy_pending = False
        self._generation = 0

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    @staticmethod
    def _is_auth_endpoint(path: str) -> bool:
        return path.split("?", 1)[0].rstrip("/") in AUTH_ENDPOINTS

    def _wants_courtesy_rotation(self, access_token: str) -> bool:
        if self._courtesy_pending or (self._refresh_task and not self._refresh_task.done()):
            return False
        try:
            exp = jwt.get_unverified_claims(access_token).get("exp")
        except JWTError:
            return False
        if not isinstance(exp, (int, float)):
            return False
        remaining = exp - self._clock().timestamp()
        return 0 < remaining <= self.courtesy_window_seconds

    def _absorb_rotation(self, response: httpx.Response, generation: int) -> bool:
        """Persist a pair the server rotated for us in response headers."""
        access_token = response.headers.get(NEW_ACCESS_TOKEN_HEADER)
        refresh_token = response.headers.get(NEW_REFRESH_TOKEN_HEADER)
        if not access_token or not refresh_token or generation != self._generation:
            return False
        if self.manager.update_tokens(Tokens(access_token, refresh_token)) is None:
            return False
        logger.info("Adopted server-rotated tokens (refresh %s)", token_fingerprint(refresh_token))
        return True

    async def _send(
        self,
        method: str,
        path: str,
        access_token: str | None,
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        courtesy = False
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
            if self._wants_courtesy_rotation(access_token):
                envelope = self.manager.load()
                if envelope is not None:
                    headers[REFRESH_TOKEN_HEADER] = envelope.refresh_token
                    courtesy = self._courtesy_pending = True
        generation = self._generation
        try:
            response = await self._http.request(method, self._url(path), headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc.__class__.__name__)
            raise NetworkFailure(str(exc) or exc.__class__.__name__) from exc
        finally:
            if courtesy:
                self._courtesy_pending = False
        self._absorb_rotation(response, generation)
        return response

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated call, refreshing and replaying once on 401."""
        trace = CallTrace(method=method, path=path)
        self.history.append(trace)
        access_token = self.manager.current_access_token()

        trace.advance(CallState.SENT)
        try:
            response = await self._send(method, path, access_token, dict(kwargs))
        except NetworkFailure:
            trace.advance(CallState.FAILED)
            raise
        if response.status_code != 401 or access_token is None or self._is_auth_endpoint(path):
            trace.advance(CallState.DONE)
            return response

        trace.advance(CallState.AUTH_FAILED)
        code = _error_code(response)
        error = error_for_code(code)
        if code and error is not AuthError and not error.recoverable:
            trace.advance(CallState.FAILED)
            await self._end_session(code)
            raise SessionEnded(_error_detail(response), reason=code)

        trace.advance(CallState.REFRESHING)
        current = self.manager.current_access_token()
        try:
            if current and current != access_token:
                new_token = current
            else:
                new_token = await self._refresh()
        except SessionEnded:
            trace.advance(CallState.FAILED)
            raise

        trace.advance(CallState.REPLAYED)
        try:
            response = await self._send(method, path, new_token, dict(kwargs))
        except NetworkFailure:
            trace.advance(CallState.FAILED)
            raise
        if response.status_code == 401:
            trace.advance(CallState.FAILED)
            await self._end_session("replay_unauthorized")
            raise SessionEnded("Request unauthorized after refresh", reason="replay_unauthorized")
        trace.advance(CallState.DONE)
        return response

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def _refresh(self) -> str:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._perform_refresh(self._generation))
        return await asyncio.shield(self._refresh_task)

    async def _perform_refresh(self, generation: int) -> str:
        envelope = self.manager.load()
        if envelope is None:
            raise SessionEnded("No stored session", reason="no_session")
        logger.info("Refreshing session (refresh %s)", token_fingerprint(envelope.refresh_token))
        try:
            response = await self._http.post(
                self._url("/auth/refresh-token"),
                headers={REFRESH_TOKEN_HEADER: envelope.refresh_token},
            )
        except httpx.HTTPError as exc:
            logger.warning("Token refresh failed: %s", exc.__class__.__name__)
            if generation == self._generation:
                await self._end_session("network_failure")
            raise SessionEnded("Token refresh failed", reason="network_failure") from exc

        if generation != self._generation:
            raise SessionEnded("Signed out during refresh", reason="logged_out")

        if response.status_code == 200:
            try:
                data = response.json()
                tokens = Tokens(data["accessToken"], data["refreshToken"])
            except (ValueError, KeyError, TypeError):
                logger.warning("Refresh returned an unusable body; ending session")
                await self._end_session("refresh_rejected")
                raise SessionEnded("Malformed refresh response", reason="refresh_rejected") from None
            self.manager.update_tokens(tokens, account=data.get("account"), metadata=data.get("session"))
            return tokens.access_token

        code = _error_code(response)
        if code == "stale":
            adopted = self._adopt_winner(response, envelope)
            if adopted:
                return adopted
        logger.info("Refresh rejected (%s); ending session", code or response.status_code)
        await self._end_session(code or "refresh_rejected")
        raise SessionEnded(_error_detail(response), reason=code or "refresh_rejected")

    def _adopt_winner(self, response: httpx.Response, envelope: PersistedSession) -> str | None:
        """Pick up the pair produced by whichever rotation beat ours."""
        if self._absorb_rotation(response, self._generation):
            return response.headers[NEW_ACCESS_TOKEN_HEADER]
        reloaded = self.manager.load()
        if reloaded is not None and reloaded.refresh_token != envelope.refresh_token:
            return reloaded.access_token
        return None

    async def _end_session(self, reason: str) -> None:
        self.manager.clear()
        if self.on_session_ended is not None:
            result = self.on_session_ended(reason)
            if asyncio.iscoroutine(result):
                await result

    async def sign_in(self, email: str, password: str, *, remember_me: bool = False) -> PersistedSession:
        try:
            response = await self._http.post(
                self._url("/auth/signin"),
                json={"email": email, "password": password, "rememberMe": remember_me},
            )
        except httpx.HTTPError as exc:
            raise NetworkFailure(str(exc) or exc.__class__.__name__) from exc
        if response.status_code != 200:
            raise error_for_code(_error_code(response))(_error_detail(response))
        data = response.json()
        self._generation += 1
        return self.manager.save(
            Tokens(data["accessToken"], data["refreshToken"]),
            data.get("account") or {},
            remember_me,
            data.get("sessionMetadata"),
        )

    async def heartbeat(self) -> dict[str, Any]:
        response = await self.get("/auth/heartbeat")
        if response.status_code != 200:
            raise error_for_code(_error_code(response))(_error_detail(response))
        return response.json()

    async def logout(self, *, all_devices: bool = False) -> None:
        """Clear local state first; any refresh still in flight is discarded."""
        self._generation += 1
        self._refresh_task = None
        envelope = self.manager.load()
        self.manager.clear()
        if envelope is None:
            return
        try:
            await self._http.post(
                self._url("/auth/logout"),
                json={"allDevices": all_devices},
                headers={
                    "Authorization": f"Bearer {envelope.access_token}",
                    REFRESH_TOKEN_HEADER: envelope.refresh_token,
                },
            )
        except httpx.HTTPError as exc:
            logger.info("Server logout not confirmed: %s", exc.__class__.__name__)
