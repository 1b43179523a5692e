"""
In-memory element collection with an explicit mutation API.

The store is the only owner of element state. Callers read immutable
snapshots and change state through ``replace_with_merge`` or the
registration transitions below; there are no field-level setters.

Allowed registration transitions:

    unregistered --mark_pending--> pending
    registered   --mark_pending--> pending      (explicit re-registration)
    pending      --mark_pending--> pending      (resume with a new token)
    pending      --mark_registered--> registered
    registered   --mark_registered--> registered   (refresh saw it first)
    pending      --mark_unregistered--> unregistered
"""

from typing import Collection, Iterable, Iterator, List, Optional, Tuple

import structlog

from library.errors import ElementNotFoundError, InvalidTransitionError
from library.identity import find_match, matches
from library.models import Element, RegistrationStatus
from library.reconciler import merge

logger = structlog.get_logger(__name__)


class ElementStore:
    """
    Authoritative element collection for one library view.

    Example:
        >>> store = ElementStore()
        >>> store.replace_with_merge(fetched)
        >>> store.mark_pending("a1", job_token="local-1")
        >>> store.mark_registered("a1", "rk_42")
    """

    def __init__(self, elements: Optional[Iterable[Element]] = None):
        self._elements: List[Element] = list(elements or [])
        self.logger = logger.bind(component="element_store")

    def __len__(self) -> int:
        return len(self._elements)

    def __iter__(self) -> Iterator[Element]:
        return iter(self.snapshot())

    def snapshot(self) -> Tuple[Element, ...]:
        """Immutable view of the current elements, in display order."""
        return tuple(self._elements)

    def find(self, ref: str) -> Optional[Element]:
        """Element named by ``ref`` (local asset id or identity), or None."""
        return find_match(self._elements, ref)

    def replace_with_merge(
        self,
        incoming: Iterable[Element],
        in_flight: Collection[str] = (),
    ) -> Tuple[Element, ...]:
        """
        Reconcile a fresh fetch against the current state and adopt the result.

        Args:
            incoming: Freshly fetched elements
            in_flight: Match keys whose registration is being polled

        Returns:
            The new snapshot
        """
        self._elements = merge(self._elements, incoming, in_flight)
        self.logger.info("store_replaced", count=len(self._elements))
        return self.snapshot()

    def prepend(self, element: Element) -> None:
        """Insert a newly created element at the head of the collection."""
        self._elements = [e for e in self._elements if e.identity != element.identity]
        self._elements.insert(0, element)

    def remove(self, ref: str) -> Optional[Element]:
        """
        Remove the element named by ``ref`` (local asset id or identity).

        Returns:
            The removed element, or None if nothing matched
        """
        for index, element in enumerate(self._elements):
            if matches(element, ref):
                del self._elements[index]
                return element
        return None

    # --- registration transitions ---

    def mark_pending(self, ref: str, job_token: str) -> Element:
        """Optimistically flag an element as being registered."""
        if not job_token:
            raise InvalidTransitionError("pending requires a job token", {"ref": ref})
        return self._update(ref, {
            "registration_status": RegistrationStatus.PENDING,
            "pending_job_token": job_token,
        })

    def attach_job_token(self, ref: str, job_token: str) -> Element:
        """Replace the token of a pending element with the one the server reported."""
        element = self._require(ref)
        if element.registration_status != RegistrationStatus.PENDING:
            raise InvalidTransitionError(
                f"cannot attach job token to {element.registration_status.value} element",
                {"ref": ref},
            )
        if element.pending_job_token == job_token:
            return element
        return self._update(ref, {"pending_job_token": job_token})

    def mark_registered(self, ref: str, new_identity: str) -> Element:
        """Finalize a registration: adopt the provider id and clear the token."""
        element = self._require(ref)
        if element.registration_status == RegistrationStatus.UNREGISTERED:
            raise InvalidTransitionError(
                "cannot complete registration of an element that is not pending",
                {"ref": ref, "identity": element.identity},
            )
        return self._update(ref, {
            "identity": new_identity,
            "registration_status": RegistrationStatus.REGISTERED,
            "pending_job_token": None,
        })

    def mark_unregistered(self, ref: str) -> Element:
        """Roll back a pending registration after failure or abandonment."""
        element = self._require(ref)
        if element.registration_status != RegistrationStatus.PENDING:
            raise InvalidTransitionError(
                f"cannot revert {element.registration_status.value} element",
                {"ref": ref, "identity": element.identity},
            )
        return self._update(ref, {
            "identity": element.local_asset_id or element.identity,
            "registration_status": RegistrationStatus.UNREGISTERED,
            "pending_job_token": None,
        })

    def _require(self, ref: str) -> Element:
        element = self.find(ref)
        if element is None:
            raise ElementNotFoundError(ref)
        return element

    def _update(self, ref: str, changes: dict) -> Element:
        for index, element in enumerate(self._elements):
            if matches(element, ref):
                # model_copy skips validation, so rebuild to re-check the token/status coupling
                updated = Element.model_validate({**element.model_dump(), **changes})
                self._elements[index] = updated
                self.logger.debug(
                    "element_updated",
                    ref=ref,
                    identity=updated.identity,
                    status=updated.registration_status.value,
                )
                return updated
        raise ElementNotFoundError(ref)
