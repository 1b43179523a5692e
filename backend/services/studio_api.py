"""
Production backend API client

Async httpx wrapper for the endpoints the element library talks to:
project asset catalog, personal element library CRUD and element
registration.

Key Features:
- Shared AsyncClient with base URL, timeout and bearer auth
- Retry logic with exponential backoff for network errors and 5xx/429
- Non-2xx replies raised as RemoteServiceError (status and body kept for logs)
- Typed responses via pydantic schemas
"""

import logging
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import settings
from library.errors import ErrorCode, LibraryError, RemoteServiceError, is_transient
from schemas import (
    CreateElementRequest,
    CreateElementResponse,
    PersonalElementsResponse,
    ProjectAssetsResponse,
    RegistrationResponse,
)

logger = structlog.get_logger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]
PayloadT = TypeVar("PayloadT", bound=BaseModel)


class StudioApiClient:
    """
    Client for the production backend.

    Usage:
        async with StudioApiClient(token_provider=get_id_token) as api:
            assets = await api.get_project_assets("proj-1")
            reply = await api.register_element("proj-1", "character", "a1")
    """

    def __init__(
        self,
        base_url: str = None,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = None,
        max_retries: int = None,
        retry_wait=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize API client.

        Args:
            base_url: Backend URL (default: settings.STUDIO_API_URL)
            token_provider: Coroutine returning the current bearer token, if any
            timeout: Request timeout in seconds (default: settings.STUDIO_API_TIMEOUT)
            max_retries: Attempts per request for transient failures (default: 3)
            retry_wait: tenacity wait strategy between transient retries
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or settings.studio_api_base_url).rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout or settings.STUDIO_API_TIMEOUT
        self.max_retries = max_retries or settings.STUDIO_API_MAX_RETRIES
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

        self.logger = logger.bind(service="studio_api")

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "StudioApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- endpoints ---

    async def list_personal_elements(self) -> PersonalElementsResponse:
        """GET the user's standalone element library."""
        data = await self._request("GET", "/api/v1/production/elements")
        return self._parse(PersonalElementsResponse, data, "list_personal_elements")

    async def get_project_assets(self, project_id: str) -> ProjectAssetsResponse:
        """GET characters, products and locations for a project."""
        data = await self._request("GET", f"/api/v1/assets/{project_id}")
        return self._parse(ProjectAssetsResponse, data, "get_project_assets")

    async def create_element(self, request: CreateElementRequest) -> CreateElementResponse:
        """POST a new standalone element."""
        data = await self._request(
            "POST",
            "/api/v1/production/elements/create",
            json=request.model_dump(),
        )
        return self._parse(CreateElementResponse, data, "create_element")

    async def delete_element(self, element_id: str) -> None:
        """DELETE a standalone element."""
        await self._request("DELETE", f"/api/v1/elements/{element_id}")

    async def register_element(
        self,
        project_id: str,
        asset_type: str,
        asset_id: str,
        force: bool = False,
    ) -> RegistrationResponse:
        """
        POST the idempotent register-or-check call for a project asset.

        Args:
            project_id: Owning project
            asset_type: character, product or location
            asset_id: Local asset id
            force: Re-register even if the asset already has a provider id
        """
        params = {"force": "true"} if force else None
        data = await self._request(
            "POST",
            f"/api/v1/assets/{project_id}/{asset_type}/{asset_id}/register_kling",
            params=params,
        )
        return self._parse(RegistrationResponse, data, "register_element")

    # --- plumbing ---

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self.retry_wait,
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logging.getLogger(__name__), logging.INFO),
            reraise=True,
        )
        return await retrying(self._send, method, path, **kwargs)

    async def _send(self, method: str, path: str, **kwargs) -> Any:
        headers = {}
        if self.token_provider is not None:
            try:
                token = await self.token_provider()
            except Exception as e:
                self.logger.error("studio_api_token_failed", path=path, error=str(e))
                raise RemoteServiceError(f"Could not obtain auth token for {method} {path}: {e}") from e
            if token:
                headers["Authorization"] = f"Bearer {token}"

        self.logger.debug("studio_api_request", method=method, path=path)

        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            self.logger.warning("studio_api_timeout", method=method, path=path, error=str(e))
            raise LibraryError(
                ErrorCode.REMOTE_TIMEOUT,
                f"{method} {path} timed out",
                {"path": path},
            ) from e
        except httpx.TransportError as e:
            self.logger.warning("studio_api_network_error", method=method, path=path, error=str(e))
            raise RemoteServiceError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            body = response.text
            self.logger.error(
                "studio_api_error_response",
                method=method,
                path=path,
                status_code=response.status_code,
                body=body[:500],
            )
            if response.status_code == 401:
                self.logger.error("studio_api_unauthorized", path=path)
            raise RemoteServiceError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=body,
                user_message=_detail_from(response),
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise LibraryError(
                ErrorCode.INVALID_RESPONSE,
                f"{method} {path} returned non-JSON body",
                {"path": path, "body": response.text[:500]},
            ) from e

    def _parse(self, model: Type[PayloadT], data: Any, operation: str) -> PayloadT:
        try:
            return model.model_validate(data or {})
        except ValidationError as e:
            self.logger.error("studio_api_invalid_payload", operation=operation, error=str(e))
            raise LibraryError(
                ErrorCode.INVALID_RESPONSE,
                f"{operation} returned an unexpected payload",
                {"operation": operation},
            ) from e


def _detail_from(response: httpx.Response) -> Optional[str]:
    """Short ``detail`` message from a FastAPI-style error body, if there is one."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("message")
        if isinstance(detail, str) and len(detail) <= 200:
            return detail
    return None
