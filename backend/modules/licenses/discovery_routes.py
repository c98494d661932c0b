"""RSL Platform — robots.txt, Link header and RSS pointers to active licenses."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse, Response

from core.dependencies import Principal, get_principal, get_service
from core.errors import unwrap
from modules.licenses import discovery
from modules.licenses.schemas import LinkHeadersRequest, RobotsTxtRequest, RssFeedRequest

log = logging.getLogger("rsl.api")

router = APIRouter(prefix="/metadata", tags=["Metadata"])

licenses_dep = get_service("LicenseService")


@router.post("/robots-txt", response_class=PlainTextResponse)
async def robots_txt(
    body: RobotsTxtRequest,
    principal: Principal = Depends(get_principal),
    licenses=Depends(licenses_dep),
):
    """robots.txt advertising one license with a ``License:`` directive."""
    snapshot = unwrap(licenses.load_active(license_id=body.license_id))
    content = discovery.robots_txt(snapshot.document, body.domain, body.additional_directives)
    return PlainTextResponse(content, headers={"Content-Disposition": 'attachment; filename="robots.txt"'})


@router.post("/link-headers")
async def link_headers(
    body: LinkHeadersRequest,
    principal: Principal = Depends(get_principal),
    licenses=Depends(licenses_dep),
):
    """Header values a publisher adds to responses serving licensed content."""
    snapshot = unwrap(licenses.load_active(license_id=body.license_id))
    return {
        "success": True,
        "headers": discovery.link_headers(snapshot.license_id, body.base_url),
        "licenseId": snapshot.license_id,
    }


@router.post("/rss-feed")
async def rss_feed(
    body: RssFeedRequest,
    principal: Principal = Depends(get_principal),
    licenses=Depends(licenses_dep),
):
    """RSS feed over the active licenses among licenseIds; the rest are left out."""
    docs = unwrap(licenses.load_active_documents(body.license_ids))
    content = discovery.rss_feed(
        docs, licenses.clock(),
        title=body.feed_title,
        description=body.feed_description,
        feed_url=body.feed_url,
        base_url=body.base_url,
    )
    log.info(f"RSS feed generated for {principal.id}: {len(docs)} of {len(body.license_ids)} licenses")
    return Response(
        content=content,
        media_type=discovery.RSS_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="rsl-feed.rss"'},
    )
