"""
HTTP client for the evidence (payment receipt) store.

The store accepts raw bytes and answers with a retrievable URL; the
workflow only ever keeps that URL.
"""
import logging
import httpx
from typing import Optional

from ..config import EVIDENCE_STORE_URL, EVIDENCE_TIMEOUT
from ..errors import ValidationError

logger = logging.getLogger(__name__)

MAX_EVIDENCE_BYTES = 10 * 1024 * 1024


async def upload_evidence(
    filename: str,
    content: bytes,
    content_type: Optional[str] = None,
    token: Optional[str] = None,
) -> str:
    """
    Store a payment receipt and return its URL.

    Args:
        filename: Original file name
        content: Raw file bytes
        content_type: MIME type reported by the uploader
        token: Optional JWT token to authorize the inter-service request

    Returns:
        URL of the stored receipt

    Raises:
        ValidationError: if the file is empty or too large
        httpx.HTTPError: If there's a network error, the service is unavailable,
            or the reply carries no usable URL
    """
    if not content:
        raise ValidationError("Evidence file is empty")
    if len(content) > MAX_EVIDENCE_BYTES:
        raise ValidationError(
            f"Evidence file exceeds maximum size ({MAX_EVIDENCE_BYTES} bytes)",
            details={"size": len(content)},
        )

    headers = {"Authorization": f"Bearer {token}"} if token else None
    files = {"file": (filename, content, content_type or "application/octet-stream")}
    async with httpx.AsyncClient(timeout=EVIDENCE_TIMEOUT) as client:
        response = await client.post(f"{EVIDENCE_STORE_URL}/", files=files, headers=headers)
        response.raise_for_status()
        try:
            url = response.json().get("url")
        except ValueError as e:
            raise httpx.HTTPError(f"Evidence store returned a non-JSON response: {e}") from e

    if not url:
        raise httpx.HTTPError("Evidence store response did not include a URL")
    logger.info(f"Stored evidence '{filename}' ({len(content)} bytes) at {url}")
    return url
