"""Cloud profile service client (remote settings).

GET/POST ``{base_url}/api/settings`` with the user's bearer token and an
``X-User-ID`` header. The response body is the settings document itself.
Every failure (no network, timeout, non-2xx, bad JSON) is logged and turned
into ``None`` / ``False``; nothing is raised to callers.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from schoolsync.config import DEFAULT_CLOUD_BASE_URL, load_cloud_credentials, validate_backend_url
from schoolsync.errors import RemoteError
from schoolsync.types import CloudIdentity

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class CloudSettingsClient:
    """Async client for the settings endpoint of the cloud profile service.

    Args:
        base_url: Service root, e.g. ``https://accounts.betterseqta.org``.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
        client: Optional pre-built ``httpx.AsyncClient``; not closed by ``aclose``.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_CLOUD_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if validate_backend_url(base_url) is None:
            raise ValueError(f"Refusing to use backend URL {base_url!r}")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def settings_url(self) -> str:
        return f"{self.base_url}/api/settings"

    def _headers(self, identity: CloudIdentity) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {identity.token}",
            "X-User-ID": identity.user_id,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, identity: CloudIdentity, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                self.settings_url,
                headers=self._headers(identity),
                timeout=self.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise RemoteError(f"{method} {self.settings_url} timed out") from e
        except httpx.HTTPError as e:
            raise RemoteError(f"{method} {self.settings_url} failed: {e}") from e
        if response.status_code >= 400:
            raise RemoteError(
                f"{method} {self.settings_url} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def fetch_remote_settings(self, identity: CloudIdentity) -> Optional[Dict[str, Any]]:
        try:
            response = await self._request("GET", identity)
            data = response.json()
        except RemoteError as e:
            logger.warning(f"Fetching cloud settings failed: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Cloud settings response is not JSON: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Cloud settings response is a {type(data).__name__}, expected an object")
            return None
        return data

    async def push_remote_settings(self, identity: CloudIdentity, settings: Dict[str, Any]) -> bool:
        try:
            await self._request("POST", identity, json=settings)
        except RemoteError as e:
            logger.warning(f"Pushing cloud settings failed: {e}")
            return False
        except (TypeError, ValueError) as e:
            logger.error(f"Settings document could not be encoded for upload: {e}")
            return False
        logger.info(f"Settings synced to cloud ({len(settings)} keys)")
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StaticIdentityProvider:
    """Identity provider returning a fixed identity (or None)."""

    def __init__(self, identity: Optional[CloudIdentity] = None):
        self.identity = identity

    async def get_identity(self) -> Optional[CloudIdentity]:
        return self.identity


class CredentialsIdentityProvider:
    """Resolves the cloud identity from credentials.json or the environment.

    Re-read on every call so a login or logout takes effect without restart.
    """

    async def get_identity(self) -> Optional[CloudIdentity]:
        creds = load_cloud_credentials()
        if not creds:
            return None
        return CloudIdentity(user_id=creds["user_id"], token=creds["auth_token"])
