from typing import List, Optional

from pydantic import Field

from modules.licenses.document import CamelModel


class WebhookRegisterRequest(CamelModel):
    url: str = Field(..., max_length=2000)
    # Checked against the event vocabulary by the dispatcher so the error is invalid_events
    events: List[str] = Field(..., min_length=1)


class WebhookUpdateRequest(CamelModel):
    url: Optional[str] = Field(None, max_length=2000)
    events: Optional[List[str]] = None
    is_active: Optional[bool] = None
    expected_version: Optional[int] = Field(None, ge=1)
