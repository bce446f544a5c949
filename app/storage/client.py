# app/storage/client.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from app.escrow.errors import ExternalServiceError
from app.http import HttpClient, is_retryable_http
from settings import settings

logger = logging.getLogger("escrow.storage")


class StorageClient:
    """
    Uploads proof files to the hosted object store and hands back public URLs.

    POST {STORAGE_URL}/storage/v1/object/{bucket}/{path}
    public: {STORAGE_URL}/storage/v1/object/public/{bucket}/{path}
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        bucket: Optional[str] = None,
        http: Optional[HttpClient] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.STORAGE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.STORAGE_SERVICE_KEY
        self.bucket = bucket or settings.STORAGE_BUCKET
        self.http = http or HttpClient(timeout_s=settings.STORAGE_HTTP_TIMEOUT_S)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    def upload(self, path: str, content: bytes, content_type: str) -> str:
        if not self.base_url:
            raise ExternalServiceError("storage is not configured", code="STORAGE_NOT_CONFIGURED")

        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{path}"
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": content_type,
            "x-upsert": "false",
        }

        try:
            resp = self.http.post(url, headers=headers, content=content)
        except httpx.TimeoutException as e:
            logger.warning("storage upload timeout bucket=%s path=%s", self.bucket, path)
            raise ExternalServiceError("storage upload timed out", code="STORAGE_TIMEOUT") from e
        except httpx.HTTPError as e:
            logger.warning("storage upload transport error bucket=%s path=%s err=%s", self.bucket, path, e)
            raise ExternalServiceError("storage upload failed", code="STORAGE_UNAVAILABLE") from e

        if not resp.ok:
            message = None
            if resp.json:
                message = resp.json.get("message") or resp.json.get("error")
            logger.warning(
                "storage upload rejected status=%s retryable=%s path=%s message=%s",
                resp.status_code,
                is_retryable_http(resp.status_code),
                path,
                message,
            )
            raise ExternalServiceError(
                message or f"storage upload failed (HTTP {resp.status_code})",
                code="STORAGE_UPLOAD_FAILED",
            )

        logger.info("proof uploaded bucket=%s path=%s bytes=%s", self.bucket, path, len(content))
        return self.public_url(path)
