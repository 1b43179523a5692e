"""
Pydantic schemas for production backend payloads
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Any


class _Payload(BaseModel):
    """Backend payloads grow new fields freely; ignore the ones we don't read."""
    model_config = ConfigDict(extra="ignore")


class KlingElementData(_Payload):
    """Registration bookkeeping stored on a project asset"""
    task_id: Optional[str] = Field(None, description="Provider job id while registration is running")


class VisualTraits(_Payload):
    vibe: Optional[str] = None


class CatalogAssetRecord(_Payload):
    """A character, product or location as returned by the project asset endpoint"""
    id: str
    name: str = ""
    image_url: Optional[str] = None
    kling_element_id: Optional[Any] = Field(None, description="Provider element id once registered")
    kling_element_data: Optional[KlingElementData] = None
    visual_traits: Optional[VisualTraits] = None

    @property
    def remote_id(self) -> Optional[str]:
        if self.kling_element_id in (None, ""):
            return None
        return str(self.kling_element_id)

    @property
    def job_token(self) -> Optional[str]:
        if self.kling_element_data is None:
            return None
        return self.kling_element_data.task_id or None


class ProjectAssetsResponse(_Payload):
    """Response from GET /api/v1/assets/{project_id}"""
    characters: List[CatalogAssetRecord] = Field(default_factory=list)
    products: List[CatalogAssetRecord] = Field(default_factory=list)
    locations: List[CatalogAssetRecord] = Field(default_factory=list)


class PersonalElementRecord(_Payload):
    """Standalone element from the user's library"""
    id: Any
    name: str = ""
    description: Optional[str] = None
    image_url: Optional[str] = None
    type: str = "image_refer"


class PersonalElementsResponse(_Payload):
    """Response from GET /api/v1/production/elements"""
    elements: List[PersonalElementRecord] = Field(default_factory=list)


class CreateElementRequest(BaseModel):
    """Request body for POST /api/v1/production/elements/create"""
    name: str = Field(..., min_length=1, max_length=100, description="Element name")
    description: str = Field("", description="Free-text description of the element")
    refer_type: str = Field("image_refer", description="Reference type: image_refer or video_refer")
    frontal_image_url: str = Field(..., min_length=1, description="Main reference image")
    refer_image_urls: List[str] = Field(default_factory=list, description="Additional reference angles")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Hero",
                "description": "Lead character, red jacket",
                "refer_type": "image_refer",
                "frontal_image_url": "https://storage.example.com/projects/p1/elements/hero.png",
                "refer_image_urls": []
            }
        }


class CreateElementResponse(_Payload):
    status: str
    element: Optional[PersonalElementRecord] = None
    detail: Optional[str] = None


class RegistrationResponse(_Payload):
    """
    Response from POST .../register_kling.

    The same endpoint starts the job and reports on it:
    - {"status": "error", "message": ...}     failed
    - {"kling_element_id": ...}                completed
    - anything else                            still processing
    """
    status: Optional[str] = None
    message: Optional[str] = None
    kling_element_id: Optional[Any] = None
    task_id: Optional[str] = None
