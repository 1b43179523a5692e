"""
Element registration client

Thin contract over the backend's idempotent register-or-check endpoint.
Holds no state between calls: repeating a call for the same asset is safe
because the backend dedupes on asset id (unless ``force`` is set).
"""

import structlog

from library.models import AssetRef, RegistrationResult
from services.studio_api import StudioApiClient

logger = structlog.get_logger(__name__)


class RegistrationClient:
    """
    Register project assets with the video generation provider.

    Example:
        >>> client = RegistrationClient(api, project_id="proj-1")
        >>> result = await client.register(AssetRef(asset_type="character", asset_id="a1"))
        >>> result.state
        <RegistrationState.PROCESSING: 'processing'>
    """

    def __init__(self, api: StudioApiClient, project_id: str):
        self.api = api
        self.project_id = project_id
        self.logger = logger.bind(service="registration_client", project_id=project_id)

    async def register(self, asset_ref: AssetRef, force: bool = False) -> RegistrationResult:
        """
        Issue one register-or-check call.

        Args:
            asset_ref: Project asset to register
            force: Bypass remote dedup to re-register an already registered asset

        Returns:
            completed(id), processing(job token) or failed(reason)

        Raises:
            RemoteServiceError: Transport failure or non-2xx reply
        """
        reply = await self.api.register_element(
            self.project_id,
            asset_ref.asset_type.value,
            asset_ref.asset_id,
            force=force,
        )

        if reply.status == "error":
            reason = reply.message or "Element registration failed"
            self.logger.warning(
                "registration_reported_failure",
                asset_id=asset_ref.asset_id,
                reason=reason,
            )
            return RegistrationResult.failed(reason)

        if reply.kling_element_id not in (None, ""):
            return RegistrationResult.completed(str(reply.kling_element_id))

        self.logger.debug(
            "registration_processing",
            asset_id=asset_ref.asset_id,
            status=reply.status,
            task_id=reply.task_id,
        )
        return RegistrationResult.processing(reply.task_id)
