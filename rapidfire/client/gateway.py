from __future__ import annotations

import asyncio
import logging

import requests

from rapidfire.errors import RapidFireError, RoomNotFound, SessionNotFound, TransportError, error_from_payload
from rapidfire.schemas import AuthResponse, GameSession, normalize_room_code

logger = logging.getLogger(__name__)


class MatchmakingGateway:
    """
    Request/response entry points that precede channel attachment.

    Blocking ``requests`` calls run in a worker thread so the event loop
    keeps serving the channel and the timer.
    """

    def __init__(self, base_url: str, token: str | None = None, http: requests.Session | None = None, timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.http = http or requests.Session()
        self.timeout = timeout
        self._random_request: asyncio.Task | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        try:
            response = self.http.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            raise error_from_payload(body if isinstance(body, dict) else {}, response.status_code)
        return body

    async def _call(self, method: str, path: str, payload: dict | None = None) -> dict:
        return await asyncio.to_thread(self._request, method, path, payload)

    async def _session(self, method: str, path: str, allow_terminal: bool = False) -> GameSession:
        session = GameSession.model_validate(await self._call(method, path))
        if session.status.is_terminal and not allow_terminal:
            raise SessionNotFound(f"Session {session.session_id} is already {session.status.value}")
        return session

    async def login(self, username: str, password: str) -> AuthResponse:
        auth = AuthResponse.model_validate(
            await self._call("POST", "/auth/login", {"username": username, "password": password})
        )
        self.token = auth.access_token
        return auth

    async def register(self, username: str, password: str) -> AuthResponse:
        auth = AuthResponse.model_validate(
            await self._call("POST", "/auth/register", {"username": username, "password": password})
        )
        self.token = auth.access_token
        return auth

    async def find_random_match(self) -> GameSession:
        # a second caller waits for the request already in flight
        if self._random_request is None or self._random_request.done():
            self._random_request = asyncio.ensure_future(self._session("POST", "/rapidfire/random"))
        return await asyncio.shield(self._random_request)

    async def create_room(self) -> GameSession:
        return await self._session("POST", "/rapidfire/room")

    async def join_room(self, room_code: str) -> GameSession:
        try:
            code = normalize_room_code(room_code)
        except ValueError as exc:
            raise RoomNotFound(str(exc)) from exc
        return await self._session("POST", f"/rapidfire/room/{code}/join")

    async def get_session(self, session_id: str) -> GameSession:
        return await self._session("GET", f"/rapidfire/{session_id}", allow_terminal=True)

    async def leave_session(self, session_id: str) -> GameSession | None:
        try:
            return await self._session("POST", f"/rapidfire/{session_id}/leave", allow_terminal=True)
        except SessionNotFound:
            return None
        except RapidFireError as exc:
            logger.warning("Leaving session %s failed: %s", session_id, exc)
            raise
