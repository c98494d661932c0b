"""
modules/licenses/embedder.py — Text-format MetadataEmbedder.

Two formats are supported:

  html     the license goes into <head> as a <script id="rsl-license"> block,
           a <meta name="rsl-license"> tag and a <link rel="license"> data URI
  sidecar  a separate "<filename>.rsl" file holding the XML

Binary container formats (EXIF, XMP, ID3) are not handled here.
"""

import base64
import html
import logging
import re
from typing import Optional

from core.base import utcnow
from core.interfaces.metadata import EmbeddedFile, MetadataEmbedder

log = logging.getLogger("rsl.licenses")

RSL_MEDIA_TYPE = "application/rsl+xml"

_HEAD_CLOSE = re.compile(r"</head>", re.IGNORECASE)
_SCRIPT = re.compile(r'<script[^>]*id="rsl-license"[^>]*>(.*?)</script>', re.DOTALL)
_META = re.compile(r'<meta[^>]*name="rsl-license"[^>]*content="([^"]*)"[^>]*>', re.IGNORECASE)
_LICENSE = re.compile(r"<rsl:license[^>]*>.*?</rsl:license>", re.DOTALL)


class UnsupportedFormat(ValueError):
    pass


class TextMetadataEmbedder(MetadataEmbedder):
    formats = ("html", "sidecar")

    def detect_format(self, file: EmbeddedFile) -> str:
        return "html" if file.media_type == "text/html" else "sidecar"

    def embed(self, file: EmbeddedFile, license_xml: str, fmt: str) -> EmbeddedFile:
        if fmt == "html":
            return self._embed_html(file, license_xml)
        if fmt == "sidecar":
            return self._sidecar(file, license_xml)
        raise UnsupportedFormat(f"Unsupported embedding format: {fmt}")

    def extract(self, file: EmbeddedFile) -> Optional[str]:
        try:
            text = file.content.decode("utf-8")
        except UnicodeDecodeError:
            log.debug(f"{file.filename}: not UTF-8 text, no embedded license")
            return None

        match = _SCRIPT.search(text)
        if match:
            return match.group(1).strip()
        match = _META.search(text)
        if match:
            return html.unescape(match.group(1))
        match = _LICENSE.search(text)
        return match.group(0) if match else None

    def _embed_html(self, file: EmbeddedFile, license_xml: str) -> EmbeddedFile:
        if file.media_type != "text/html":
            raise UnsupportedFormat("HTML embedding only supported for HTML files")
        page = file.content.decode("utf-8")
        encoded = base64.b64encode(license_xml.encode("utf-8")).decode("ascii")
        block = (
            f'\n<script type="{RSL_MEDIA_TYPE}" id="rsl-license">\n{license_xml}\n</script>\n'
            f'<meta name="rsl-license" content="{html.escape(license_xml, quote=True)}" />\n'
            f'<link rel="license" href="data:{RSL_MEDIA_TYPE};base64,{encoded}" />\n'
        )
        if _HEAD_CLOSE.search(page):
            page = _HEAD_CLOSE.sub(lambda _: f"{block}</head>", page, count=1)
        else:
            page = f"<head>{block}</head>\n{page}"
        return EmbeddedFile(file.filename, page.encode("utf-8"), file.media_type)

    def _sidecar(self, file: EmbeddedFile, license_xml: str) -> EmbeddedFile:
        body = (
            "# RSL License File\n"
            f"# Generated for: {file.filename}\n"
            f"# Created: {utcnow().isoformat()}\n\n"
            f"{license_xml}\n"
        )
        return EmbeddedFile(f"{file.filename}.rsl", body.encode("utf-8"), RSL_MEDIA_TYPE)
