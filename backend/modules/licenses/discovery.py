"""
modules/licenses/discovery.py — Crawler-facing license pointers.

Three ways for a publisher to advertise where a license lives:

  robots.txt  a ``License:`` directive next to the usual crawl rules
  Link        HTTP ``Link`` header values for responses serving the content
  RSS         a feed whose items carry the license terms in the rsl namespace

Every pointer targets the public XML endpoint of the license. Callers pass
documents of active licenses only; nothing here touches the store.
"""

import xml.etree.ElementTree as ET
from datetime import datetime
from email.utils import format_datetime
from typing import Iterable, Optional, Sequence

from core.base import RSL_NAMESPACE, RSL_VERSION, ensure_utc
from modules.licenses.document import LicenseDocument
from modules.licenses.embedder import RSL_MEDIA_TYPE
from modules.licenses.rsl_xml import XML_DECLARATION

LICENSE_XML_PATH = "/api/v1/licenses/{license_id}/xml"
RSS_MEDIA_TYPE = "application/rss+xml"

DEFAULT_FEED_TITLE = "RSL Licensed Content"
DEFAULT_FEED_DESCRIPTION = "Content licensed under the RSL standard"


def _stamp(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def license_url(license_id: str, base_url: Optional[str] = None) -> str:
    path = LICENSE_XML_PATH.format(license_id=license_id)
    return f"{base_url.rstrip('/')}{path}" if base_url else path


# ============== robots.txt ==============

def robots_txt(doc: LicenseDocument, domain: str, additional_directives: Sequence[str] = ()) -> str:
    url = license_url(doc.license_id, domain)
    lines = [
        "# Robots.txt with RSL License Information",
        "User-agent: *",
        "Allow: /",
        "",
        "# RSL License Information",
        f"# License: {url}",
        f"# License ID: {doc.license_id}",
        f"# Created: {_stamp(doc.created_at)}",
    ]
    if doc.expires_at:
        lines.append(f"# Expires: {_stamp(doc.expires_at)}")
    lines += ["", "# RSL License Directive", f"License: {url}"]
    if additional_directives:
        lines += ["", "# Additional Directives", *additional_directives]
    return "\n".join(lines) + "\n"


# ============== Link headers ==============

def link_headers(license_id: str, base_url: Optional[str] = None) -> dict:
    url = license_url(license_id, base_url)
    links = [
        f'<{url}>; rel="license"; type="{RSL_MEDIA_TYPE}"',
        f'<{url}>; rel="alternate"; type="{RSL_MEDIA_TYPE}"; title="RSL License"',
        f'<{url}>; rel="describedby"; type="{RSL_MEDIA_TYPE}"',
    ]
    return {
        "Link": ", ".join(links),
        "X-RSL-License": license_id,
        "X-RSL-Version": RSL_VERSION,
    }


# ============== RSS ==============

def _text(parent: ET.Element, tag: str, text: str) -> ET.Element:
    el = ET.SubElement(parent, tag)
    el.text = text
    return el


def rss_feed(
    docs: Iterable[LicenseDocument],
    now: datetime,
    title: Optional[str] = None,
    description: Optional[str] = None,
    feed_url: Optional[str] = None,
    base_url: Optional[str] = None,
) -> str:
    """RSS 2.0 feed with one item per license. Item links resolve against base_url."""
    rss = ET.Element("rss", {"version": "2.0", "xmlns:rsl": RSL_NAMESPACE})
    channel = ET.SubElement(rss, "channel")
    _text(channel, "title", title or DEFAULT_FEED_TITLE)
    _text(channel, "description", description or DEFAULT_FEED_DESCRIPTION)
    if feed_url:
        _text(channel, "link", feed_url)
    _text(channel, "lastBuildDate", format_datetime(ensure_utc(now), usegmt=True))
    _text(channel, "generator", "RSL Platform")

    for doc in docs:
        item = ET.SubElement(channel, "item")
        _text(item, "title", doc.content.title)
        _text(item, "description", doc.content.description)
        _text(item, "link", license_url(doc.license_id, base_url))
        guid = _text(item, "guid", doc.license_id)
        guid.set("isPermaLink", "false")
        _text(item, "pubDate", format_datetime(ensure_utc(doc.created_at), usegmt=True))
        _text(item, "rsl:license", doc.license_id)
        _text(item, "rsl:file-type", doc.content.file_type)
        _text(item, "rsl:file-size", str(doc.content.file_size))
        _text(item, "rsl:permissions", ",".join(p.type.value for p in doc.permissions if p.allowed))
        _text(item, "rsl:payment-model", doc.payment_model.type.value)

    return f"{XML_DECLARATION}\n{ET.tostring(rss, encoding='unicode')}\n"
