"""
modules/licenses/schemas.py — Request bodies for the licenses routes.

The full-document body is LicenseDocument itself (modules.licenses.document).
"""

import base64
import binascii
from typing import List, Optional

from pydantic import Field, field_validator

from modules.licenses.builder import FileInfo, LicenseOptions
from modules.licenses.document import CamelModel


class LicenseFromOptionsRequest(CamelModel):
    options: LicenseOptions = Field(default_factory=LicenseOptions)
    file_info: FileInfo
    creator: Optional[str] = None


class XmlValidateRequest(CamelModel):
    xml: str = Field(min_length=1)


class _FilePayload(CamelModel):
    filename: str = Field(min_length=1, max_length=255)
    media_type: str = "application/octet-stream"
    content: str  # base64

    @field_validator("content")
    @classmethod
    def _base64(cls, v):
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("content must be base64-encoded")
        return v

    def raw(self) -> bytes:
        return base64.b64decode(self.content)


class EmbedRequest(_FilePayload):
    format: Optional[str] = None  # html | sidecar; detected from media type when omitted


class ExtractRequest(_FilePayload):
    pass


# ============== Discovery ==============

_HTTP_URL = r"^https?://[^\s/]+(/\S*)?$"


class RobotsTxtRequest(CamelModel):
    license_id: str
    domain: str = Field(pattern=_HTTP_URL)
    additional_directives: List[str] = Field(default_factory=list, max_length=50)

    @field_validator("additional_directives")
    @classmethod
    def _one_line_each(cls, v):
        if any("\n" in d or "\r" in d for d in v):
            raise ValueError("directives must be single lines")
        return v


class LinkHeadersRequest(CamelModel):
    license_id: str
    base_url: Optional[str] = Field(None, pattern=_HTTP_URL)


class RssFeedRequest(CamelModel):
    license_ids: List[str] = Field(min_length=1, max_length=100)
    feed_title: Optional[str] = Field(None, max_length=500)
    feed_description: Optional[str] = None
    feed_url: Optional[str] = Field(None, pattern=_HTTP_URL)
    base_url: Optional[str] = Field(None, pattern=_HTTP_URL)
