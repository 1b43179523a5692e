"""
Conversion of backend records into Elements.
"""

from typing import List, Optional

from library.models import (
    AssetType,
    Element,
    ElementKind,
    ElementOrigin,
    RegistrationStatus,
)
from schemas import (
    CatalogAssetRecord,
    PersonalElementRecord,
    PersonalElementsResponse,
    ProjectAssetsResponse,
)

# Shown when a project asset carries no description of its own
DEFAULT_DESCRIPTIONS = {
    AssetType.CHARACTER: "Character",
    AssetType.PRODUCT: "Product",
    AssetType.LOCATION: "Location",
}


def derive_status(remote_id: Optional[str], job_token: Optional[str]) -> RegistrationStatus:
    """
    Registration status implied by a record's raw fields.

    A remote id means registered; a job token without a remote id means a
    job is running; neither means unregistered.
    """
    if remote_id:
        return RegistrationStatus.REGISTERED
    if job_token:
        return RegistrationStatus.PENDING
    return RegistrationStatus.UNREGISTERED


def element_from_catalog_record(record: CatalogAssetRecord, asset_type: AssetType) -> Optional[Element]:
    """
    Build a catalog Element from a project asset record.

    Returns None for assets without an image; they cannot be used as a
    reference yet.
    """
    if not record.image_url:
        return None

    remote_id = record.remote_id
    status = derive_status(remote_id, record.job_token)

    description = DEFAULT_DESCRIPTIONS[asset_type]
    if asset_type == AssetType.CHARACTER and record.visual_traits and record.visual_traits.vibe:
        description = record.visual_traits.vibe

    return Element(
        identity=remote_id or record.id,
        local_asset_id=record.id,
        asset_type=asset_type,
        display_name=record.name,
        description=description,
        image_url=record.image_url,
        kind=ElementKind.IMAGE_REFER,
        origin=ElementOrigin.CATALOG,
        registration_status=status,
        pending_job_token=record.job_token if status == RegistrationStatus.PENDING else None,
    )


def elements_from_project_assets(assets: ProjectAssetsResponse) -> List[Element]:
    """Characters, then products, then locations."""
    elements = []
    for asset_type, records in (
        (AssetType.CHARACTER, assets.characters),
        (AssetType.PRODUCT, assets.products),
        (AssetType.LOCATION, assets.locations),
    ):
        for record in records:
            element = element_from_catalog_record(record, asset_type)
            if element is not None:
                elements.append(element)
    return elements


def element_from_personal_record(record: PersonalElementRecord) -> Element:
    """
    Build a personal Element. Library elements are created on the provider
    directly, so their id is already a registration id.
    """
    try:
        kind = ElementKind(record.type)
    except ValueError:
        kind = ElementKind.IMAGE_REFER

    return Element(
        identity=str(record.id),
        display_name=record.name,
        description=record.description,
        image_url=record.image_url,
        kind=kind,
        origin=ElementOrigin.PERSONAL,
        registration_status=RegistrationStatus.REGISTERED,
    )


def elements_from_personal_library(response: PersonalElementsResponse) -> List[Element]:
    return [element_from_personal_record(record) for record in response.elements]
