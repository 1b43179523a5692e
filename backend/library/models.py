"""
Domain models for the element library.

Elements are frozen: every change produces a new instance through
``model_copy(update=...)``, so a snapshot handed to a view can never be
mutated behind the store's back.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RegistrationStatus(str, Enum):
    """Provider registration state of an element"""
    UNREGISTERED = "unregistered"
    PENDING = "pending"
    REGISTERED = "registered"


class ElementKind(str, Enum):
    """How the generation pipeline consumes the reference"""
    IMAGE_REFER = "image_refer"
    VIDEO_REFER = "video_refer"


class ElementOrigin(str, Enum):
    """Where an element comes from"""
    CATALOG = "catalog"    # a project asset (character, product, location)
    PERSONAL = "personal"  # the user's standalone library


class AssetType(str, Enum):
    """Project asset types that can be registered with the provider"""
    CHARACTER = "character"
    PRODUCT = "product"
    LOCATION = "location"


class Element(BaseModel):
    """
    A visual reference asset usable by the video generation pipeline.

    ``identity`` is the provider-issued registration id once the element is
    registered, otherwise the local asset id. ``pending_job_token`` is set
    exactly while ``registration_status`` is pending.
    """

    model_config = ConfigDict(frozen=True)

    identity: str = Field(..., min_length=1, description="Registration id or local asset id")
    local_asset_id: Optional[str] = Field(None, description="Owning project asset, absent for library-only elements")
    asset_type: Optional[AssetType] = None
    display_name: str = ""
    description: Optional[str] = None
    image_url: Optional[str] = None
    kind: ElementKind = ElementKind.IMAGE_REFER
    origin: ElementOrigin = ElementOrigin.PERSONAL
    registration_status: RegistrationStatus = RegistrationStatus.UNREGISTERED
    pending_job_token: Optional[str] = None

    @model_validator(mode="after")
    def _check_token_matches_status(self) -> "Element":
        is_pending = self.registration_status == RegistrationStatus.PENDING
        if is_pending != (self.pending_job_token is not None):
            raise ValueError(
                "pending_job_token must be set if and only if registration_status is pending"
            )
        return self

    @property
    def is_registered(self) -> bool:
        return self.registration_status == RegistrationStatus.REGISTERED


class AssetRef(BaseModel):
    """Reference to a project asset passed to the registration endpoint"""

    model_config = ConfigDict(frozen=True)

    asset_type: AssetType
    asset_id: str = Field(..., min_length=1)


class RegistrationState(str, Enum):
    COMPLETED = "completed"
    PROCESSING = "processing"
    FAILED = "failed"


class RegistrationResult(BaseModel):
    """
    Outcome of a single register-or-check call.

    Use the ``completed`` / ``processing`` / ``failed`` constructors rather
    than building instances by hand.
    """

    model_config = ConfigDict(frozen=True)

    state: RegistrationState
    element_id: Optional[str] = None
    job_token: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_variant_fields(self) -> "RegistrationResult":
        if self.state == RegistrationState.COMPLETED and not self.element_id:
            raise ValueError("completed result requires element_id")
        if self.state == RegistrationState.FAILED and not self.reason:
            raise ValueError("failed result requires reason")
        return self

    @classmethod
    def completed(cls, element_id: str) -> "RegistrationResult":
        return cls(state=RegistrationState.COMPLETED, element_id=element_id)

    @classmethod
    def processing(cls, job_token: Optional[str] = None) -> "RegistrationResult":
        return cls(state=RegistrationState.PROCESSING, job_token=job_token)

    @classmethod
    def failed(cls, reason: str) -> "RegistrationResult":
        return cls(state=RegistrationState.FAILED, reason=reason)

    @property
    def is_processing(self) -> bool:
        return self.state == RegistrationState.PROCESSING


class NoticeLevel(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    ERROR = "error"


class Notice(BaseModel):
    """Short user-facing message emitted by library operations"""

    model_config = ConfigDict(frozen=True)

    level: NoticeLevel
    message: str
