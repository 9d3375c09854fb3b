from __future__ import annotations

import asyncio
import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import Response

from policytracker.apps.api.deps import Principal, get_current_principal, get_usage_tracker
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES
from policytracker.apps.api.routes.usage import quota_exceeded
from policytracker.core.config import get_settings
from policytracker.services.audit import AuditEventType, record_event
from policytracker.services.compression import Document, compress_document
from policytracker.services.usage import UsageTracker, format_storage_size


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["documents"],
    responses={**DEFAULT_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES},
)


@router.post("/compress")
async def compress_upload(
    request: Request,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> Response:
    """Compress an uploaded policy document and charge its stored size to the user.

    The response body is the (possibly unchanged) document bytes; size
    accounting is reported in ``X-Original-Size`` and ``X-Compressed-Size``.
    """
    settings = get_settings()
    data = await file.read(settings.compression_max_upload_bytes + 1)
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "Uploaded file is empty"},
        )
    if len(data) > settings.compression_max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={
                "code": "PAYLOAD_TOO_LARGE",
                "message": "Uploaded file exceeds the maximum size",
                "max_bytes": settings.compression_max_upload_bytes,
            },
        )

    document = Document(
        filename=file.filename or "document",
        content_type=file.content_type or "application/octet-stream",
        data=data,
    )
    # Pillow and pypdf are CPU-bound; keep the event loop responsive.
    result = await asyncio.to_thread(compress_document, document)
    compressed = result.document

    if not await tracker.add_storage_usage(compressed.size):
        await record_event(
            AuditEventType.STORAGE_BLOCKED,
            user_id=principal.user_id,
            request=request,
            metadata={"requested_bytes": compressed.size, "used_bytes": tracker.usage.storage_used_bytes},
        )
        raise quota_exceeded(
            metric="storage",
            limit=tracker.limits.max_storage_bytes,
            used=tracker.usage.storage_used_bytes,
            tier=tracker.tier,
            message=f"Storage limit of {format_storage_size(tracker.limits.max_storage_bytes)} reached",
        )

    headers = {
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(compressed.filename)}",
        "X-Original-Size": str(result.original_size),
        "X-Compressed-Size": str(result.compressed_size),
        "X-Storage-Used": str(tracker.usage.storage_used_bytes),
    }
    return Response(content=compressed.data, media_type=compressed.content_type, headers=headers)
