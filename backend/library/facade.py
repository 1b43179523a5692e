"""
Element library facade.

Public surface consumed by views: fetch, register, create, delete and
upload, plus a read-only snapshot of the elements and a loading flag.
Every remote failure is caught here and turned into a short Notice; the
detail goes to the log.

Key Features:
- Concurrent fetch of the personal library and the project catalog, merged
  through the store without regressing registration progress
- Optimistic "pending" state while a registration is polled
- Single-flight registration per asset: a second call joins the first
- Cancellation of polls when their element is deleted or the view closes
"""

import asyncio
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from library.catalog import (
    element_from_personal_record,
    elements_from_personal_library,
    elements_from_project_assets,
)
from library.errors import (
    ElementNotFoundError,
    InvalidTransitionError,
    LibraryError,
    PollCancelledError,
    RegistrationFailedError,
    StorageUploadError,
)
from library.identity import match_key
from library.models import (
    AssetRef,
    AssetType,
    Element,
    Notice,
    NoticeLevel,
    RegistrationResult,
    RegistrationStatus,
)
from library.poll_loop import CancellationToken, PollLoop, PollPolicy
from library.store import ElementStore
from log_config import configure_logging
from schemas import CreateElementRequest
from services.registration_client import RegistrationClient
from services.storage_backend import StorageBackend, get_storage_backend
from services.studio_api import StudioApiClient, TokenProvider

logger = structlog.get_logger(__name__)

Notifier = Callable[[Notice], None]

STILL_PROCESSING_MESSAGE = "Registration is still processing. Please try again in a moment."


class ElementLibrary:
    """
    Element library for one project.

    Example:
        >>> library = ElementLibrary("proj-1", api)
        >>> await library.fetch_all()
        >>> element_id = await library.register("character", "a1")
        >>> [e.registration_status for e in library.elements]
    """

    def __init__(
        self,
        project_id: str,
        api: StudioApiClient,
        registration_client: Optional[RegistrationClient] = None,
        storage: Optional[StorageBackend] = None,
        poll_loop: Optional[PollLoop] = None,
        poll_policy: Optional[PollPolicy] = None,
        notifier: Optional[Notifier] = None,
        owns_api: bool = False,
    ):
        """
        Initialize element library.

        Args:
            project_id: Project whose catalog is merged with the personal library
            api: Production backend client
            registration_client: Register-or-check client (default: built on ``api``)
            storage: Image upload backend (default: from settings, built on first upload)
            poll_loop: Registration poll driver (default: built from ``poll_policy``)
            poll_policy: Attempt budget and spacing (default: from settings)
            notifier: Receives a Notice for every user-visible outcome
            owns_api: Close ``api`` in ``close()``
        """
        self.project_id = project_id
        self.api = api
        self.registration_client = registration_client or RegistrationClient(api, project_id)
        self.poll_loop = poll_loop or PollLoop(poll_policy)
        self.notifier = notifier
        self.owns_api = owns_api

        self.store = ElementStore()
        self.last_error: Optional[str] = None

        self._storage = storage
        self._loading = 0
        self._inflight: Dict[str, "asyncio.Future[Optional[str]]"] = {}
        self._tokens: Dict[str, CancellationToken] = {}

        self.logger = logger.bind(component="element_library", project_id=project_id)

    # --- read-only state ---

    @property
    def elements(self) -> Tuple[Element, ...]:
        return self.store.snapshot()

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    def is_registering(self, ref: str) -> bool:
        element = self.store.find(ref)
        key = match_key(element) if element is not None else str(ref)
        return key in self._inflight

    # --- operations ---

    async def fetch_all(self) -> Tuple[Element, ...]:
        """
        Refresh from the personal library and the project catalog.

        A source that fails contributes nothing; the failure is logged.

        Returns:
            The merged snapshot
        """
        with self._loading_scope():
            self.logger.info("fetch_all_started")
            project_elements, personal_elements = await asyncio.gather(
                self._fetch_project_elements(),
                self._fetch_personal_elements(),
            )
            tracked_before = {match_key(element) for element in self.store.snapshot()}
            snapshot = self.store.replace_with_merge(
                project_elements + personal_elements,
                in_flight=set(self._inflight),
            )
            self._cancel_orphaned_polls(tracked_before)

        self.logger.info(
            "fetch_all_completed",
            project_count=len(project_elements),
            personal_count=len(personal_elements),
            total=len(snapshot),
        )
        return snapshot

    async def register(self, asset_type, asset_id: str) -> Optional[str]:
        """
        Register a project asset with the provider and wait for the result.

        Re-registers (``force``) when the asset is already registered. A
        concurrent call for the same asset joins the one in flight.

        Args:
            asset_type: character, product or location
            asset_id: Local asset id (or current identity)

        Returns:
            The provider element id, or None on failure, cancellation, an
            unknown asset type or when the job is still processing after the
            attempt budget
        """
        try:
            asset_type = AssetType(asset_type)
        except ValueError:
            self.logger.warning("register_unknown_asset_type", asset_type=asset_type, asset_id=asset_id)
            self._notify(NoticeLevel.ERROR, f"Cannot enable asset of type '{asset_type}'")
            return None
        existing = self.store.find(str(asset_id))
        if existing is not None and existing.local_asset_id:
            # The endpoint is keyed by local asset id, even if the caller passed the provider id
            asset_id = existing.local_asset_id
        ref = AssetRef(asset_type=asset_type, asset_id=str(asset_id))
        key = match_key(existing) if existing is not None else ref.asset_id

        inflight = self._inflight.get(key)
        if inflight is not None:
            self.logger.info("register_joined_inflight", asset_id=ref.asset_id, key=key)
            return await asyncio.shield(inflight)

        task = asyncio.ensure_future(self._register(ref, key))
        self._inflight[key] = task
        task.add_done_callback(lambda done, key=key: self._forget_inflight(key, done))
        return await asyncio.shield(task)

    async def create(
        self,
        name: str,
        description: str,
        frontal_image_url: str,
        reference_urls: Optional[List[str]] = None,
    ) -> Optional[Element]:
        """
        Create a personal element and put it first in the library.

        Returns:
            The new element, or None if the backend did not confirm success
        """
        with self._loading_scope():
            try:
                request = CreateElementRequest(
                    name=name,
                    description=description or "",
                    frontal_image_url=frontal_image_url,
                    refer_image_urls=list(reference_urls or []),
                )
            except ValidationError as e:
                self.logger.warning("create_element_invalid_input", error=str(e))
                self._notify(NoticeLevel.ERROR, "Please provide a name and a reference image.")
                return None

            try:
                reply = await self.api.create_element(request)
            except LibraryError as e:
                e.log_error()
                self._notify(NoticeLevel.ERROR, _remote_message(e, "Failed to create character"))
                return None

            if reply.status != "success" or reply.element is None:
                self.logger.error("create_element_not_confirmed", status=reply.status, detail=reply.detail)
                self._notify(NoticeLevel.ERROR, reply.detail or "Failed to create character")
                return None

            element = element_from_personal_record(reply.element)
            self.store.prepend(element)

        self.logger.info("element_created", identity=element.identity)
        self._notify(NoticeLevel.SUCCESS, "Character created successfully")
        return element

    async def delete(self, identity: str) -> bool:
        """
        Delete an element. The store is only changed once the backend confirms.

        Any registration poll for the element is cancelled.

        Returns:
            True if the backend confirmed the delete
        """
        identity = str(identity)
        try:
            await self.api.delete_element(identity)
        except LibraryError as e:
            e.log_error()
            self._notify(NoticeLevel.ERROR, "Failed to delete character")
            return False

        removed = self.store.remove(identity)
        if removed is not None:
            self._cancel_poll(match_key(removed))
        self.logger.info("element_deleted", identity=identity, was_present=removed is not None)
        self._notify(NoticeLevel.SUCCESS, "Character deleted")
        return True

    async def upload_image(
        self,
        filename: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> Optional[str]:
        """
        Upload a reference image and return its public URL.

        Does not touch the store.
        """
        cloud_path = f"projects/{self.project_id}/elements/{int(time.time() * 1000)}_{filename}"
        try:
            return await self.storage.upload_bytes(data, cloud_path, content_type)
        except LibraryError as e:
            e.log_error()
            self._notify(NoticeLevel.ERROR, "Failed to upload image")
            return None

    async def close(self) -> None:
        """Tear down: stop all polls without further store changes."""
        for key in list(self._tokens):
            self._cancel_poll(key)

        pending = list(self._inflight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self.owns_api:
            await self.api.aclose()
        self.logger.info("element_library_closed", cancelled=len(pending))

    @property
    def storage(self) -> StorageBackend:
        if self._storage is None:
            try:
                self._storage = get_storage_backend()
            except ValueError as e:
                raise StorageUploadError(f"Storage is not configured: {e}") from e
        return self._storage

    # --- internals ---

    async def _fetch_project_elements(self) -> List[Element]:
        try:
            assets = await self.api.get_project_assets(self.project_id)
        except LibraryError as e:
            self.logger.warning("fetch_project_assets_failed", **e.to_dict())
            return []
        return elements_from_project_assets(assets)

    async def _fetch_personal_elements(self) -> List[Element]:
        try:
            response = await self.api.list_personal_elements()
        except LibraryError as e:
            self.logger.warning("fetch_personal_elements_failed", **e.to_dict())
            return []
        return elements_from_personal_library(response)

    async def _register(self, ref: AssetRef, key: str) -> Optional[str]:
        log = self.logger.bind(asset_type=ref.asset_type.value, asset_id=ref.asset_id)
        existing = self.store.find(ref.asset_id)
        force = existing is not None and existing.is_registered

        token = CancellationToken()
        self._tokens[key] = token

        with self._loading_scope():
            try:
                if existing is not None:
                    # Local token until the backend reports the real job id
                    self.store.mark_pending(ref.asset_id, job_token=f"local-{uuid.uuid4().hex}")
                log.info("registration_started", force=force, tracked=existing is not None)

                outcome = await self.poll_loop.run(
                    lambda: self.registration_client.register(ref, force=force),
                    token=token,
                    on_result=lambda result: self._on_processing(ref.asset_id, result),
                    asset_type=ref.asset_type.value,
                    asset_id=ref.asset_id,
                )
            except PollCancelledError:
                log.info("registration_cancelled")
                return None
            except RegistrationFailedError as e:
                e.log_error()
                self._finish_unregistered(ref.asset_id, token)
                self._notify(NoticeLevel.ERROR, e.get_user_friendly_message())
                return None
            except LibraryError as e:
                e.log_error()
                self._finish_unregistered(ref.asset_id, token)
                self._notify(NoticeLevel.ERROR, _remote_message(e, "Failed to enable asset"))
                return None
            finally:
                if self._tokens.get(key) is token:
                    del self._tokens[key]

            if token.cancelled:
                log.info("registration_cancelled")
                return None

            if outcome.indeterminate:
                # The job may still finish server-side; the next fetch will pick it up
                log.warning("registration_indeterminate", attempts=outcome.attempts)
                self._finish_unregistered(ref.asset_id, token)
                self._notify(NoticeLevel.INFO, STILL_PROCESSING_MESSAGE)
                return None

            try:
                self.store.mark_registered(ref.asset_id, outcome.element_id)
            except (ElementNotFoundError, InvalidTransitionError) as e:
                log.warning("registration_result_not_applied", reason=str(e))

        log.info("registration_completed", element_id=outcome.element_id, attempts=outcome.attempts)
        self._notify(NoticeLevel.SUCCESS, "Asset enabled for video generation")
        return outcome.element_id

    def _on_processing(self, ref: str, result: RegistrationResult) -> None:
        if not result.job_token:
            return
        element = self.store.find(ref)
        if element is not None and element.registration_status == RegistrationStatus.PENDING:
            self.store.attach_job_token(ref, result.job_token)

    def _finish_unregistered(self, ref: str, token: CancellationToken) -> None:
        if token.cancelled:
            return
        element = self.store.find(ref)
        if element is None or element.registration_status != RegistrationStatus.PENDING:
            # A refresh already moved it on (e.g. the server now reports it registered)
            return
        self.store.mark_unregistered(ref)

    def _forget_inflight(self, key: str, task: "asyncio.Future[Optional[str]]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _cancel_poll(self, key: str) -> None:
        token = self._tokens.get(key)
        if token is not None and not token.cancelled:
            self.logger.info("registration_poll_cancel_requested", key=key)
            token.cancel()

    def _cancel_orphaned_polls(self, tracked_before) -> None:
        # Only polls whose element was in the store and vanished from the fetch
        for key in list(self._tokens):
            if key in tracked_before and self.store.find(key) is None:
                self._cancel_poll(key)

    @contextmanager
    def _loading_scope(self):
        self._loading += 1
        try:
            yield
        finally:
            self._loading -= 1

    def _notify(self, level: NoticeLevel, message: str) -> None:
        if level == NoticeLevel.ERROR:
            self.last_error = message
        if self.notifier is not None:
            self.notifier(Notice(level=level, message=message))


def _remote_message(error: LibraryError, fallback: str) -> str:
    """User-facing message for a remote failure: the server's detail if it gave one."""
    return error.user_message or fallback


def create_element_library(
    project_id: str,
    token_provider: Optional[TokenProvider] = None,
    notifier: Optional[Notifier] = None,
) -> ElementLibrary:
    """
    Build an element library wired to the configured backend.

    Configures structlog if the host application has not.
    """
    if not structlog.is_configured():
        configure_logging()

    api = StudioApiClient(token_provider=token_provider)
    return ElementLibrary(project_id, api, notifier=notifier, owns_api=True)
