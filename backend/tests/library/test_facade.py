"""
Tests for the ElementLibrary facade.

Covers the end-to-end flows a view drives: fetch, register (including
concurrency and cancellation), create, delete and upload.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from library.errors import RemoteServiceError, StorageUploadError
from library.models import NoticeLevel, RegistrationResult, RegistrationStatus
from library.poll_loop import PollPolicy
from schemas import CreateElementResponse, PersonalElementsResponse
from services.storage_backend import StorageBackend
from tests.conftest import ScriptedRegistrationClient, character_record, set_project_characters


REGISTERED = RegistrationStatus.REGISTERED
PENDING = RegistrationStatus.PENDING
UNREGISTERED = RegistrationStatus.UNREGISTERED


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_fresh_character_is_unregistered(self, make_library, mock_api):
        """A catalog character with no registration id and no job token is unregistered."""
        set_project_characters(mock_api, character_record("a1"))
        library = make_library()

        snapshot = await library.fetch_all()

        assert len(snapshot) == 1
        assert snapshot[0].registration_status == UNREGISTERED
        assert snapshot[0].identity == "a1"
        mock_api.get_project_assets.assert_awaited_once_with("proj-1")

    @pytest.mark.asyncio
    async def test_stale_refresh_keeps_registration(self, make_library, mock_api):
        """A registered element survives a refresh from a source that has not caught up."""
        set_project_characters(mock_api, character_record("a1", kling_element_id="rk_42"))
        library = make_library()
        await library.fetch_all()

        set_project_characters(mock_api, character_record("a1"))
        await library.fetch_all()

        element = library.store.find("a1")
        assert element.registration_status == REGISTERED
        assert element.identity == "rk_42"

    @pytest.mark.asyncio
    async def test_project_elements_come_before_personal(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        mock_api.list_personal_elements.return_value = PersonalElementsResponse.model_validate(
            {"elements": [{"id": "el_1", "name": "Hero"}]}
        )
        library = make_library()

        snapshot = await library.fetch_all()

        assert [e.identity for e in snapshot] == ["a1", "el_1"]

    @pytest.mark.asyncio
    async def test_failing_source_contributes_nothing(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        mock_api.list_personal_elements.side_effect = RemoteServiceError("down", status_code=503)
        library = make_library()

        snapshot = await library.fetch_all()

        assert [e.identity for e in snapshot] == ["a1"]
        assert library.is_loading is False

    @pytest.mark.asyncio
    async def test_both_sources_failing_is_not_fatal(self, make_library, mock_api):
        mock_api.get_project_assets.side_effect = RemoteServiceError("down")
        mock_api.list_personal_elements.side_effect = RemoteServiceError("down")
        library = make_library()

        assert await library.fetch_all() == ()

    @pytest.mark.asyncio
    async def test_sources_are_fetched_concurrently(self, make_library, mock_api):
        both_started = asyncio.Event()
        started = []

        async def slow_source(*args):
            started.append(1)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)
            return PersonalElementsResponse()

        async def slow_assets(project_id):
            await slow_source()
            return mock_api.get_project_assets.return_value

        library = make_library()
        mock_api.list_personal_elements.side_effect = slow_source
        mock_api.get_project_assets.side_effect = slow_assets

        await library.fetch_all()

        assert len(started) == 2


class TestRegister:
    @pytest.mark.asyncio
    async def test_completes_after_processing(self, make_library, mock_api, notices):
        """processing, processing, completed -> registered with the new id after 3 calls."""
        set_project_characters(mock_api, character_record("a1"))
        client = ScriptedRegistrationClient([
            RegistrationResult.processing(),
            RegistrationResult.processing(),
            RegistrationResult.completed("rk_99"),
        ])
        library = make_library(client)
        await library.fetch_all()

        element_id = await library.register("character", "a1")

        assert element_id == "rk_99"
        assert len(client.calls) == 3
        element = library.store.find("a1")
        assert element.registration_status == REGISTERED
        assert element.identity == "rk_99"
        assert element.pending_job_token is None
        assert notices[-1].level == NoticeLevel.SUCCESS
        assert library.is_loading is False

    @pytest.mark.asyncio
    async def test_failure_reverts_and_surfaces_reason(self, make_library, mock_api, notices):
        set_project_characters(mock_api, character_record("a1"))
        client = ScriptedRegistrationClient([RegistrationResult.failed("quota")])
        library = make_library(client)
        await library.fetch_all()

        element_id = await library.register("character", "a1")

        assert element_id is None
        assert len(client.calls) == 1
        assert library.store.find("a1").registration_status == UNREGISTERED
        assert "quota" in library.last_error
        assert notices[-1].level == NoticeLevel.ERROR
        assert "quota" in notices[-1].message

    @pytest.mark.asyncio
    async def test_always_processing_is_bounded(self, make_library, mock_api, notices):
        """Never hangs, never raises; reverts so the user can retry."""
        set_project_characters(mock_api, character_record("a1"))
        client = ScriptedRegistrationClient([RegistrationResult.processing()])
        policy = PollPolicy(max_attempts=4, interval_seconds=0.01)
        library = make_library(client, policy=policy)
        await library.fetch_all()

        element_id = await asyncio.wait_for(library.register("character", "a1"), timeout=5)

        assert element_id is None
        assert len(client.calls) == 4
        assert library.store.find("a1").registration_status == UNREGISTERED
        assert notices[-1].level == NoticeLevel.INFO
        assert "still processing" in notices[-1].message

    @pytest.mark.asyncio
    async def test_remote_error_is_caught(self, make_library, mock_api, notices):
        set_project_characters(mock_api, character_record("a1"))
        client = Mock()
        client.register = AsyncMock(side_effect=RemoteServiceError("down", status_code=502))
        library = make_library(client)
        await library.fetch_all()

        assert await library.register("character", "a1") is None
        assert library.store.find("a1").registration_status == UNREGISTERED
        assert notices[-1].level == NoticeLevel.ERROR

    @pytest.mark.asyncio
    async def test_unregistered_uses_force_false(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_1")])
        library = make_library(client)
        await library.fetch_all()

        await library.register("character", "a1")

        assert client.calls[0][1] is False

    @pytest.mark.asyncio
    async def test_registered_uses_force_true(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1", kling_element_id="rk_old"))
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_new")])
        library = make_library(client)
        await library.fetch_all()

        element_id = await library.register("character", "a1")

        assert client.calls[0][1] is True
        assert element_id == "rk_new"
        assert library.store.find("a1").identity == "rk_new"

    @pytest.mark.asyncio
    async def test_register_by_current_identity(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1", kling_element_id="rk_old"))
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_new")])
        library = make_library(client)
        await library.fetch_all()

        await library.register("character", "rk_old")

        assert client.calls[0][0].asset_id == "a1"
        assert library.store.find("a1").identity == "rk_new"

    @pytest.mark.asyncio
    async def test_marks_pending_while_polling(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        gate = asyncio.Event()
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_1")], gate=gate)
        library = make_library(client)
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)

        element = library.store.find("a1")
        assert element.registration_status == PENDING
        assert element.pending_job_token is not None
        assert library.is_loading is True
        assert library.is_registering("a1")

        gate.set()
        assert await task == "rk_1"
        assert not library.is_registering("a1")

    @pytest.mark.asyncio
    async def test_server_job_token_replaces_local_token(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        client = ScriptedRegistrationClient([
            RegistrationResult.processing("task-7"),
            RegistrationResult.processing("task-7"),
        ])
        library = make_library(client, policy=PollPolicy(max_attempts=2, interval_seconds=0.05))
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.02)

        assert library.store.find("a1").pending_job_token == "task-7"
        await task

    @pytest.mark.asyncio
    async def test_untracked_asset_is_still_registered_remotely(self, make_library):
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_1")])
        library = make_library(client)

        assert await library.register("product", "p9") == "rk_1"
        assert len(client.calls) == 1
        assert len(library.elements) == 0

    @pytest.mark.asyncio
    async def test_invalid_asset_type_reported(self, make_library, notices):
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_1")])
        library = make_library(client)

        assert await library.register("scene", "a1") is None
        assert client.calls == []
        assert notices[-1].level == NoticeLevel.ERROR


class TestRegisterConcurrency:
    @pytest.mark.asyncio
    async def test_second_call_joins_in_flight_registration(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        gate = asyncio.Event()
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_1")], gate=gate)
        library = make_library(client)
        await library.fetch_all()

        first = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)
        gate.set()

        assert await first == "rk_1"
        assert await second == "rk_1"
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_during_registration_keeps_pending(self, make_library, mock_api):
        """A fetch that lands mid-poll does not wipe the optimistic pending state."""
        set_project_characters(mock_api, character_record("a1"))
        gate = asyncio.Event()
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_5")], gate=gate)
        library = make_library(client)
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)

        await library.fetch_all()
        assert library.store.find("a1").registration_status == PENDING

        gate.set()
        assert await task == "rk_5"
        assert library.store.find("a1").registration_status == REGISTERED

    @pytest.mark.asyncio
    async def test_refresh_with_old_id_keeps_re_registration_pending(self, make_library, mock_api):
        """The previous provider id reported mid-poll does not end a forced re-registration."""
        set_project_characters(mock_api, character_record("a1", kling_element_id="rk_42"))
        gate = asyncio.Event()
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_43")], gate=gate)
        library = make_library(client)
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)

        await library.fetch_all()
        element = library.store.find("a1")
        assert element.registration_status == PENDING
        assert element.identity == "rk_42"

        gate.set()
        assert await task == "rk_43"
        assert client.calls[0][1] is True
        element = library.store.find("a1")
        assert element.registration_status == REGISTERED
        assert element.identity == "rk_43"

    @pytest.mark.asyncio
    async def test_refresh_reporting_registered_wins_over_failed_poll(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        gate = asyncio.Event()
        client = ScriptedRegistrationClient([RegistrationResult.failed("timeout")], gate=gate)
        library = make_library(client)
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)
        set_project_characters(mock_api, character_record("a1", kling_element_id="rk_srv"))
        await library.fetch_all()
        gate.set()

        assert await task is None
        element = library.store.find("a1")
        assert element.registration_status == REGISTERED
        assert element.identity == "rk_srv"


class TestRegisterCancellation:
    @pytest.mark.asyncio
    async def test_delete_mid_poll_stops_polling(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        client = ScriptedRegistrationClient([RegistrationResult.processing()])
        library = make_library(client, policy=PollPolicy(max_attempts=50, interval_seconds=0.05))
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.02)
        assert await library.delete("a1") is True

        assert await asyncio.wait_for(task, timeout=2) is None
        calls_after_cancel = len(client.calls)
        await asyncio.sleep(0.1)

        assert len(client.calls) == calls_after_cancel
        assert library.store.find("a1") is None

    @pytest.mark.asyncio
    async def test_close_discards_in_flight_response(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        gate = asyncio.Event()
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_1")], gate=gate)
        library = make_library(client)
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)
        closing = asyncio.ensure_future(library.close())
        await asyncio.sleep(0)
        gate.set()
        await closing

        assert await task is None
        # No mutation after cancellation: the optimistic state is left as it was
        assert library.store.find("a1").identity == "a1"
        assert library.store.find("a1").registration_status != REGISTERED

    @pytest.mark.asyncio
    async def test_refresh_dropping_element_cancels_its_poll(self, make_library, mock_api):
        set_project_characters(mock_api, character_record("a1"))
        client = ScriptedRegistrationClient([RegistrationResult.processing()])
        library = make_library(client, policy=PollPolicy(max_attempts=50, interval_seconds=0.05))
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.02)
        set_project_characters(mock_api)
        await library.fetch_all()

        assert await asyncio.wait_for(task, timeout=2) is None


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_prepends_element(self, make_library, mock_api, notices):
        set_project_characters(mock_api, character_record("a1"), character_record("a2"))
        mock_api.create_element.return_value = CreateElementResponse.model_validate({
            "status": "success",
            "element": {"id": "el_new", "name": "Hero", "image_url": "https://cdn.example.com/h.png"},
        })
        library = make_library()
        await library.fetch_all()
        before = len(library.elements)

        element = await library.create("Hero", "desc", "https://cdn.example.com/h.png", [])

        assert element.identity == "el_new"
        assert len(library.elements) == before + 1
        assert library.elements[0].identity == "el_new"
        assert notices[-1].level == NoticeLevel.SUCCESS

        request = mock_api.create_element.await_args.args[0]
        assert request.name == "Hero"
        assert request.refer_type == "image_refer"
        assert request.refer_image_urls == []

    @pytest.mark.asyncio
    async def test_create_failure_leaves_store_untouched(self, make_library, mock_api, notices):
        set_project_characters(mock_api, character_record("a1"))
        mock_api.create_element.side_effect = RemoteServiceError(
            "rejected", status_code=400, user_message="Image too small"
        )
        library = make_library()
        await library.fetch_all()

        assert await library.create("Hero", "desc", "https://cdn.example.com/h.png") is None
        assert len(library.elements) == 1
        assert library.last_error == "Image too small"

    @pytest.mark.asyncio
    async def test_create_not_confirmed(self, make_library, mock_api):
        mock_api.create_element.return_value = CreateElementResponse.model_validate(
            {"status": "error", "detail": "Provider rejected image"}
        )
        library = make_library()

        assert await library.create("Hero", "", "https://cdn.example.com/h.png") is None
        assert len(library.elements) == 0
        assert library.last_error == "Provider rejected image"

    @pytest.mark.asyncio
    async def test_create_invalid_input_skips_backend(self, make_library, mock_api):
        library = make_library()

        assert await library.create("", "desc", "https://cdn.example.com/h.png") is None
        mock_api.create_element.assert_not_awaited()


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_on_success(self, make_library, mock_api):
        mock_api.list_personal_elements.return_value = PersonalElementsResponse.model_validate(
            {"elements": [{"id": "el_1"}, {"id": "el_2"}]}
        )
        library = make_library()
        await library.fetch_all()

        assert await library.delete("el_1") is True

        mock_api.delete_element.assert_awaited_once_with("el_1")
        assert [e.identity for e in library.elements] == ["el_2"]

    @pytest.mark.asyncio
    async def test_delete_by_local_id_after_registration_completes(self, make_library, mock_api):
        """A registration finishing while the delete is confirmed does not keep the element alive."""
        set_project_characters(mock_api, character_record("a1"))
        gate = asyncio.Event()
        client = ScriptedRegistrationClient([RegistrationResult.completed("rk_9")], gate=gate)
        library = make_library(client)
        await library.fetch_all()

        task = asyncio.ensure_future(library.register("character", "a1"))
        await asyncio.sleep(0.01)

        async def confirm_after_completion(identity):
            gate.set()
            await task

        mock_api.delete_element.side_effect = confirm_after_completion

        assert await library.delete("a1") is True
        assert await task == "rk_9"
        assert library.store.find("a1") is None
        assert library.store.find("rk_9") is None

    @pytest.mark.asyncio
    async def test_delete_failure_keeps_element(self, make_library, mock_api, notices):
        mock_api.list_personal_elements.return_value = PersonalElementsResponse.model_validate(
            {"elements": [{"id": "el_1"}]}
        )
        mock_api.delete_element.side_effect = RemoteServiceError("nope", status_code=500)
        library = make_library()
        await library.fetch_all()

        assert await library.delete("el_1") is False
        assert len(library.elements) == 1
        assert notices[-1].message == "Failed to delete character"


class TestUploadImage:
    @pytest.mark.asyncio
    async def test_upload_delegates_to_storage(self, make_library):
        storage = Mock(spec=StorageBackend)
        storage.upload_bytes = AsyncMock(return_value="https://cdn.example.com/x.png")
        library = make_library(storage=storage)

        url = await library.upload_image("hero.png", b"png-bytes", "image/png")

        assert url == "https://cdn.example.com/x.png"
        data, cloud_path, content_type = storage.upload_bytes.await_args.args
        assert data == b"png-bytes"
        assert cloud_path.startswith("projects/proj-1/elements/")
        assert cloud_path.endswith("_hero.png")
        assert content_type == "image/png"
        assert len(library.elements) == 0

    @pytest.mark.asyncio
    async def test_upload_failure_returns_none(self, make_library, notices):
        storage = Mock(spec=StorageBackend)
        storage.upload_bytes = AsyncMock(side_effect=StorageUploadError("bucket gone"))
        library = make_library(storage=storage)

        assert await library.upload_image("hero.png", b"x") is None
        assert notices[-1].message == "Failed to upload image"

    @pytest.mark.asyncio
    async def test_unconfigured_storage_returns_none(self, make_library, notices):
        library = make_library()

        with patch(
            "library.facade.get_storage_backend",
            side_effect=ValueError("STORAGE_BUCKET is required"),
        ):
            assert await library.upload_image("hero.png", b"x") is None

        assert notices[-1].message == "Failed to upload image"


class TestClose:
    @pytest.mark.asyncio
    async def test_close_without_polls(self, make_library, mock_api):
        library = make_library()
        await library.close()
        mock_api.aclose.assert_not_awaited()
