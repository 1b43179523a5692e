"""
Identity resolution for elements.

An element is matched by its local asset id when it has one, otherwise by
its identity. Merge, status updates and deletion all go through these
helpers so they never disagree about which entry an id refers to.
"""

from typing import Iterable, Optional

from library.models import Element


def match_key(element: Element) -> str:
    """Key used to pair an element across refreshes."""
    return element.local_asset_id or element.identity


def matches(element: Element, ref: str) -> bool:
    """True when ``ref`` names this element by local asset id or identity."""
    ref = str(ref)
    if element.local_asset_id is not None and element.local_asset_id == ref:
        return True
    return element.identity == ref


def find_match(elements: Iterable[Element], ref: str) -> Optional[Element]:
    """First element that ``ref`` names, or None."""
    for element in elements:
        if matches(element, ref):
            return element
    return None
