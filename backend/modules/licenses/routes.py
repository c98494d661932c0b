"""RSL Platform — License registration, retrieval, validation and statistics."""

import base64
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from core.audit import Actor
from core.dependencies import Principal, get_principal, get_request_actor, get_service
from core.errors import ErrorCode, ServiceError, ApiError, unwrap
from core.interfaces.metadata import EmbeddedFile
from modules.licenses import rsl_xml
from modules.licenses.builder import list_templates
from modules.licenses.document import LicenseDocument
from modules.licenses.embedder import RSL_MEDIA_TYPE, UnsupportedFormat
from modules.licenses.schemas import (
    EmbedRequest,
    ExtractRequest,
    LicenseFromOptionsRequest,
    XmlValidateRequest,
)

log = logging.getLogger("rsl.api")

router = APIRouter(prefix="/licenses", tags=["Licenses"])

licenses_dep = get_service("LicenseService")
embedder_dep = get_service("MetadataEmbedder")


# ============== Templates & validation (public) ==============

@router.get("/templates/list")
async def get_templates():
    """Built-in license templates."""
    return {"templates": list_templates()}


@router.post("/validate")
async def validate_xml(body: XmlValidateRequest):
    """Structural check of an RSL XML document; a valid one is parsed back."""
    report = rsl_xml.validate(body.xml)
    if not report.valid:
        return report.to_dict()
    parsed = rsl_xml.parse(body.xml)
    if not parsed.ok:
        return {"valid": False, "errors": parsed.error.details.get("details", [parsed.error.description])}
    return {"valid": True, "errors": [], "document": parsed.value.to_json()}


@router.post("/extract")
async def extract_license(body: ExtractRequest, embedder=Depends(embedder_dep)):
    """Find an embedded RSL license in an uploaded (base64) file."""
    found = embedder.extract(EmbeddedFile(body.filename, body.raw(), body.media_type))
    if found is None:
        raise ApiError(ServiceError(ErrorCode.LICENSE_NOT_FOUND, "No RSL license found in file"))
    return {"document": unwrap(rsl_xml.parse(found)).to_json(), "xmlContent": found}


# ============== CRUD ==============

@router.post("", status_code=201)
async def create_license(
    document: LicenseDocument,
    principal: Principal = Depends(get_principal),
    actor: Actor = Depends(get_request_actor),
    licenses=Depends(licenses_dep),
):
    """Register a license from a complete RSL document."""
    return unwrap(licenses.create(document, principal.id, actor))


@router.post("/from-options", status_code=201)
async def create_license_from_options(
    body: LicenseFromOptionsRequest,
    principal: Principal = Depends(get_principal),
    actor: Actor = Depends(get_request_actor),
    licenses=Depends(licenses_dep),
):
    """Register a license built from the options form (or a template)."""
    return unwrap(licenses.create_from_options(
        body.options, body.file_info, principal.id, body.creator or principal.id, actor,
    ))


@router.get("")
async def list_licenses(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: str = Query("all"),
    principal: Principal = Depends(get_principal),
    licenses=Depends(licenses_dep),
):
    """The caller's licenses, newest first."""
    return unwrap(licenses.list_licenses(principal.id, page=page, limit=limit, status=status))


@router.get("/{license_id}")
async def get_license(
    license_id: str,
    principal: Principal = Depends(get_principal),
    actor: Actor = Depends(get_request_actor),
    licenses=Depends(licenses_dep),
):
    return unwrap(licenses.get(license_id, principal.id, actor))


@router.get("/{license_id}/xml")
async def get_license_xml(
    license_id: str,
    actor: Actor = Depends(get_request_actor),
    licenses=Depends(licenses_dep),
):
    """Canonical XML of an active license."""
    xml = unwrap(licenses.get_xml(license_id, actor))
    return Response(content=xml, media_type=RSL_MEDIA_TYPE)


@router.put("/{license_id}")
async def update_license(
    license_id: str,
    document: LicenseDocument,
    expected_version: Optional[int] = Query(None, alias="expectedVersion", ge=1),
    principal: Principal = Depends(get_principal),
    actor: Actor = Depends(get_request_actor),
    licenses=Depends(licenses_dep),
):
    """Replace the terms of a license. Pass expectedVersion for compare-and-swap."""
    return unwrap(licenses.update(license_id, principal.id, document, actor, expected_version))


@router.delete("/{license_id}")
async def deactivate_license(
    license_id: str,
    principal: Principal = Depends(get_principal),
    actor: Actor = Depends(get_request_actor),
    licenses=Depends(licenses_dep),
):
    """Soft-delete a license."""
    record = unwrap(licenses.deactivate(license_id, principal.id, actor))
    return {"success": True, "message": "License deactivated", "license": record}


@router.get("/{license_id}/stats")
async def license_stats(
    license_id: str,
    principal: Principal = Depends(get_principal),
    licenses=Depends(licenses_dep),
):
    return unwrap(licenses.stats(license_id, principal.id))


@router.get("/{license_id}/audit")
async def license_audit(
    license_id: str,
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(get_principal),
    licenses=Depends(licenses_dep),
):
    return {"entries": unwrap(licenses.audit_entries(license_id, principal.id, limit=limit))}


@router.post("/{license_id}/embed")
async def embed_license(
    license_id: str,
    body: EmbedRequest,
    actor: Actor = Depends(get_request_actor),
    licenses=Depends(licenses_dep),
    embedder=Depends(embedder_dep),
):
    """Attach a license to an uploaded (base64) file in html or sidecar form."""
    xml = unwrap(licenses.get_xml(license_id, actor))
    source = EmbeddedFile(body.filename, body.raw(), body.media_type)
    fmt = body.format or embedder.detect_format(source)
    try:
        result = embedder.embed(source, xml, fmt)
    except UnsupportedFormat as e:
        raise ApiError(ServiceError(ErrorCode.INVALID_REQUEST, str(e)))
    return {
        "filename": result.filename,
        "mediaType": result.media_type,
        "format": fmt,
        "content": base64.b64encode(result.content).decode("ascii"),
    }
