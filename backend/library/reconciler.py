"""
Merge of freshly fetched elements with the currently held view.

The incoming fetch is the source of truth for which elements exist; the
current view is the source of truth for registration progress the server
has not caught up with yet.
"""

from typing import Collection, Dict, Iterable, List

import structlog

from library.identity import match_key
from library.models import Element, RegistrationStatus

logger = structlog.get_logger(__name__)


def merge(
    current: Iterable[Element],
    incoming: Iterable[Element],
    in_flight: Collection[str] = (),
) -> List[Element]:
    """
    Merge an incoming element list into the current one.

    Rules:
    - entries are paired by local asset id when present, else by identity
    - if the incoming entry is unregistered but the current one is pending or
      registered, the current entry is kept (a stale refresh must not undo a
      registration or an in-flight attempt)
    - if the current entry is registered and the incoming one is pending, the
      current entry is kept (a leftover job token never demotes a registration)
    - for keys in ``in_flight`` a pending current entry is kept unless the
      server reports it registered under a new provider id
    - otherwise the incoming entry wins
    - incoming entries with no current match are added; current entries with
      no incoming match are dropped
    - duplicate incoming keys collapse to the first occurrence

    Args:
        current: Elements held by the store
        incoming: Elements from the latest fetch, in display order
        in_flight: Match keys with a registration poll running locally

    Returns:
        New list in incoming order
    """
    current_by_key: Dict[str, Element] = {}
    for element in current:
        current_by_key.setdefault(match_key(element), element)

    merged: List[Element] = []
    seen = set()
    kept_local = 0

    for element in incoming:
        key = match_key(element)
        if key in seen:
            logger.warning("merge_duplicate_incoming_key", key=key, identity=element.identity)
            continue
        seen.add(key)

        existing = current_by_key.get(key)
        if existing is not None and _keep_current(existing, element, key in in_flight):
            merged.append(existing)
            kept_local += 1
            continue

        merged.append(element)

    dropped = len(set(current_by_key) - seen)
    logger.debug(
        "elements_merged",
        merged=len(merged),
        kept_local=kept_local,
        dropped=dropped,
    )
    return merged


def _keep_current(existing: Element, incoming: Element, polling: bool) -> bool:
    if existing.registration_status == RegistrationStatus.UNREGISTERED:
        return False
    if incoming.registration_status == RegistrationStatus.UNREGISTERED:
        return True
    if existing.registration_status == RegistrationStatus.REGISTERED:
        return incoming.registration_status == RegistrationStatus.PENDING
    # existing is pending
    if not polling:
        return False
    return not (
        incoming.registration_status == RegistrationStatus.REGISTERED
        and incoming.identity != existing.identity
    )
