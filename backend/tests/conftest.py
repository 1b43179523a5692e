"""
Shared fixtures for element library tests.

Provides element factories, a scripted registration client and a mocked
production backend so the library can be exercised without any network.
"""

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

from library.facade import ElementLibrary
from library.models import (
    AssetRef,
    AssetType,
    Element,
    ElementOrigin,
    RegistrationResult,
    RegistrationStatus,
)
from library.poll_loop import PollLoop, PollPolicy
from schemas import PersonalElementsResponse, ProjectAssetsResponse
from services.studio_api import StudioApiClient


def make_element(
    identity: str,
    local_asset_id: Optional[str] = None,
    status: RegistrationStatus = RegistrationStatus.UNREGISTERED,
    job_token: Optional[str] = None,
    name: str = "",
    origin: ElementOrigin = ElementOrigin.CATALOG,
) -> Element:
    """Build an Element; pending elements get a token unless one is given."""
    if status == RegistrationStatus.PENDING and job_token is None:
        job_token = f"task-{identity}"
    return Element(
        identity=identity,
        local_asset_id=local_asset_id,
        asset_type=AssetType.CHARACTER if local_asset_id else None,
        display_name=name or identity,
        image_url=f"https://cdn.example.com/{identity}.png",
        origin=origin,
        registration_status=status,
        pending_job_token=job_token,
    )


def character_record(
    asset_id: str,
    name: str = "Hero",
    kling_element_id=None,
    task_id: Optional[str] = None,
    image_url: Optional[str] = "https://cdn.example.com/hero.png",
) -> dict:
    """Raw character payload as the project asset endpoint returns it."""
    record = {
        "id": asset_id,
        "name": name,
        "image_url": image_url,
        "visual_traits": {"vibe": "Brooding"},
    }
    if kling_element_id is not None:
        record["kling_element_id"] = kling_element_id
    if task_id is not None:
        record["kling_element_data"] = {"task_id": task_id}
    return record


class ScriptedRegistrationClient:
    """
    Registration client stub returning results from a script.

    The last scripted result repeats once the script runs out. An optional
    gate holds every call until it is set.
    """

    def __init__(self, results: List[RegistrationResult], gate: Optional[asyncio.Event] = None):
        self.results = list(results)
        self.gate = gate
        self.calls: List[tuple] = []

    async def register(self, asset_ref: AssetRef, force: bool = False) -> RegistrationResult:
        self.calls.append((asset_ref, force))
        if self.gate is not None:
            await self.gate.wait()
        index = min(len(self.calls), len(self.results)) - 1
        return self.results[index]


@pytest.fixture
def fast_policy():
    """Poll policy with short spacing so tests finish quickly."""
    return PollPolicy(max_attempts=5, interval_seconds=0.01)


@pytest.fixture
def mock_api():
    """Mocked production backend with empty sources."""
    api = Mock(spec=StudioApiClient)
    api.get_project_assets = AsyncMock(return_value=ProjectAssetsResponse())
    api.list_personal_elements = AsyncMock(return_value=PersonalElementsResponse())
    api.create_element = AsyncMock()
    api.delete_element = AsyncMock(return_value=None)
    api.aclose = AsyncMock()
    return api


@pytest.fixture
def notices():
    return []


@pytest.fixture
def make_library(mock_api, fast_policy, notices):
    """Factory building an ElementLibrary around a registration client stub."""

    def _make(registration_client=None, policy: Optional[PollPolicy] = None, storage=None):
        return ElementLibrary(
            "proj-1",
            mock_api,
            registration_client=registration_client or ScriptedRegistrationClient(
                [RegistrationResult.processing()]
            ),
            storage=storage,
            poll_loop=PollLoop(policy or fast_policy),
            notifier=notices.append,
        )

    return _make


def set_project_characters(api, *records: dict) -> None:
    """Make the mocked backend report these characters for the project."""
    api.get_project_assets.return_value = ProjectAssetsResponse.model_validate(
        {"characters": list(records)}
    )
