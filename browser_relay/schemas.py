"""Request schemas for relay capabilities.

Each capability that takes arguments receives one of these models, both
when called over HTTP and when the Relay is used directly.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RequestModel(BaseModel):
    """Base for capability parameters; forwarded to the agent in camelCase."""

    model_config = ConfigDict(populate_by_name=True)

    def to_agent_payload(self):
        return self.model_dump(by_alias=True, exclude_none=True)


class Coordinates(BaseModel):
    """Viewport coordinates in CSS pixels."""

    x: float = Field(..., ge=0)
    y: float = Field(..., ge=0)


class ScreenshotRequest(RequestModel):
    """Parameters for capturing the inspected tab."""

    auto_paste: Optional[bool] = Field(
        default=None,
        description="Paste the screenshot into the configured application; defaults to config"
    )


class ClickElementRequest(RequestModel):
    """Click an element by selector, or a point by coordinates."""

    selector: Optional[str] = Field(default=None, description="CSS selector of the element")
    coordinates: Optional[Coordinates] = Field(default=None)
    wait_for_element: bool = Field(default=True, alias="waitForElement")
    timeout_ms: int = Field(default=5000, ge=0, le=60000, alias="timeout")

    @model_validator(mode='after')
    def validate_target(self):
        has_selector = bool(self.selector)
        if not has_selector and self.coordinates is None:
            raise ValueError("Either selector or coordinates must be provided")
        if has_selector and self.coordinates is not None:
            raise ValueError("Cannot provide both selector and coordinates")
        return self


class FillInputRequest(RequestModel):
    """Type text into an input or textarea."""

    selector: str = Field(..., min_length=1)
    value: str = Field(..., description="Text to enter")
    clear_first: bool = Field(default=True, alias="clearFirst")


class SelectOptionRequest(RequestModel):
    """Choose an option of a <select> element."""

    selector: str = Field(..., min_length=1)
    value: Optional[str] = Field(default=None)
    label: Optional[str] = Field(default=None)
    index: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode='after')
    def validate_choice(self):
        if self.value is None and self.label is None and self.index is None:
            raise ValueError("One of value, label or index must be provided")
        return self


class SubmitFormRequest(RequestModel):
    """Submit a form, optionally by clicking a specific button."""

    selector: str = Field(default="form", min_length=1, description="CSS selector of the form")
    submit_button_selector: Optional[str] = Field(default=None, alias="submitButtonSelector")


class RefreshBrowserRequest(RequestModel):
    """Reload the inspected tab."""

    wait_for_load: bool = Field(default=True, alias="waitForLoad")
    timeout_ms: int = Field(default=10000, ge=0, le=120000, alias="timeout")


class InspectElementsRequest(RequestModel):
    """Inspect the elements matching a selector."""

    selector: str = Field(..., min_length=1)
    limit: int = Field(default=10, ge=1, le=50, alias="resultLimit")
    include_computed_styles: List[str] = Field(default_factory=list, alias="includeComputedStyles")

    @field_validator('selector')
    @classmethod
    def validate_selector(cls, v):
        if not v.strip():
            raise ValueError("Selector must not be blank")
        return v.strip()


class AuditRequest(RequestModel):
    """Parameters for a Lighthouse audit."""

    url: Optional[str] = Field(
        default=None,
        description="Page to audit; defaults to the agent's current URL"
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        if v is not None and not v.startswith(('http://', 'https://')):
            raise ValueError("URL must start with http:// or https://")
        return v
