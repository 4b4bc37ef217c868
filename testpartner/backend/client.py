"""HTTP client for the session backend API.

Access and refresh tokens live in the shared store. Every authenticated
request carries the access token as a Bearer header; on HTTP 401 the client
refreshes the token once and retries the request.
"""

import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from ..errors import AuthenticationError, BackendError, StoreError
from ..models.session import LogRecord, SessionRecord
from ..store.base import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, SharedStore

logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "http://localhost:3000/api"
AUTH_PROVIDERS = {'google': 'idToken', 'github': 'code'}


class BackendClient:
    """Async client for sessions, logs, reports and authentication."""

    def __init__(
        self,
        store: SharedStore,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize backend client.

        Args:
            store: Shared store holding the access and refresh tokens
            base_url: API base URL
            timeout_seconds: Request timeout
            verify_ssl: Whether to verify TLS certificates
            transport: Custom httpx transport (used by tests)
        """
        self.store = store
        self.base_url = base_url.rstrip('/')
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout=timeout_seconds, connect=10.0),
            verify=verify_ssl,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            headers={"User-Agent": "testpartner-client/1.0"},
            transport=transport,
        )

    async def __aenter__(self) -> 'BackendClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    # Tokens

    async def _read_token(self, key: str) -> Optional[str]:
        try:
            return await self.store.get(key)
        except StoreError as e:
            logger.warning(f"Failed to read {key} from store: {e}")
            return None

    async def _save_tokens(self, data: Dict[str, Any]) -> None:
        if data.get('accessToken'):
            await self.store.set(ACCESS_TOKEN_KEY, data['accessToken'])
        if data.get('refreshToken'):
            await self.store.set(REFRESH_TOKEN_KEY, data['refreshToken'])

    async def is_authenticated(self) -> bool:
        return bool(await self._read_token(ACCESS_TOKEN_KEY))

    # Transport

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        retry_on_unauthorized: bool = True,
    ) -> Dict[str, Any]:
        headers = {}
        if authenticated:
            token = await self._read_token(ACCESS_TOKEN_KEY)
            if token:
                headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self.client.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}")

        if response.status_code == 401 and authenticated:
            if retry_on_unauthorized and await self.refresh_token():
                logger.debug(f"Retrying {method} {path} with refreshed token")
                return await self._request(method, path, json=json, params=params, retry_on_unauthorized=False)
            raise AuthenticationError(f"{method} {path} unauthorized", status_code=401)

        if response.is_error:
            raise BackendError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                details={'body': response.text[:500]},
            )

        if not response.content:
            return {'success': True}
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"{method} {path} returned invalid JSON: {e}", status_code=response.status_code)

    # Authentication

    async def authenticate(self, provider: str, token: str) -> Dict[str, Any]:
        """Exchange a provider token for backend tokens."""
        if provider not in AUTH_PROVIDERS:
            raise ValueError(f"Unsupported auth provider: {provider}")
        data = await self._request(
            "POST", f"/auth/{provider}",
            json={AUTH_PROVIDERS[provider]: token},
            authenticated=False,
        )
        if data.get('success', True):
            await self._save_tokens(data)
        return data

    async def verify_token(self) -> Dict[str, Any]:
        return await self._request("GET", "/auth/verify", retry_on_unauthorized=False)

    async def refresh_token(self) -> bool:
        """Refresh the access token.

        Returns:
            True when a new access token was stored
        """
        refresh = await self._read_token(REFRESH_TOKEN_KEY)
        if not refresh:
            logger.debug("No refresh token available")
            return False
        try:
            data = await self._request(
                "POST", "/auth/refresh",
                json={'refreshToken': refresh},
                authenticated=False,
            )
        except BackendError as e:
            logger.warning(f"Token refresh failed: {e}")
            return False
        if not data.get('accessToken'):
            return False
        await self._save_tokens(data)
        logger.info("Access token refreshed")
        return True

    async def logout(self) -> Dict[str, Any]:
        data = await self._request("POST", "/auth/logout", retry_on_unauthorized=False)
        await self.store.remove([ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY])
        return data

    # Sessions

    async def save_session(self, session: Union[SessionRecord, Dict[str, Any]]) -> Dict[str, Any]:
        """Hand a completed session to the backend."""
        body = session.to_store() if isinstance(session, SessionRecord) else session
        return await self._request("POST", "/sessions", json=body)

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/sessions/{session_id}")

    async def update_session(self, session_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PUT", f"/sessions/{session_id}", json=updates)

    async def delete_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/sessions/{session_id}")

    async def list_sessions(self, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        return await self._request("GET", "/sessions", params={'page': page, 'limit': limit})

    # Logs and reports

    async def post_logs(self, session_id: str, logs: List[Union[LogRecord, Dict[str, Any]]]) -> Dict[str, Any]:
        body = [log.model_dump(mode="json") if isinstance(log, LogRecord) else log for log in logs]
        return await self._request("POST", "/logs", json={'sessionId': session_id, 'logs': body})

    async def generate_report(self, session_id: str, report_format: str = "markdown") -> Dict[str, Any]:
        return await self._request(
            "POST", "/reports/generate",
            json={'sessionId': session_id, 'format': report_format},
        )

    def __repr__(self) -> str:
        return f"BackendClient(base_url={self.base_url})"
