from __future__ import annotations

import hashlib
import re
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from urllib.parse import unquote, urlparse

import httpx

from starterauth.config import Settings
from starterauth.logging import get_logger
from starterauth.service.errors import ErrorCodes, ServerError, ServiceError, ValidationError

logger = get_logger(__name__)

ALLOWED_MIME_TYPES = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/gif": (b"GIF87a", b"GIF89a"),
}
MAX_AVATAR_BYTES = 5 * 1024 * 1024

_VERSION_SEGMENT = re.compile(r"^v\d+$")


@dataclass(frozen=True)
class UploadedImage:
    url: str
    public_id: str
    version: Optional[int]


class AvatarService:
    """Store user avatars on Cloudinary through its signed REST upload API.

    Images land under ``<project>/<prod|dev>/avatars/<user_id>/avatar-<ms>``.
    Validation and transport failures raise :class:`ServiceError` subclasses
    carrying ``MEDIA.*`` codes.
    """

    API_BASE = "https://api.cloudinary.com/v1_1"

    def __init__(
        self,
        *,
        cloud_name: Optional[str],
        api_key: Optional[str],
        api_secret: Optional[str],
        project_name: str = "starterauth",
        production: bool = False,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = f"{project_name}/{'prod' if production else 'dev'}/avatars"
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "AvatarService":
        return cls(
            cloud_name=settings.cloudinary_cloud_name,
            api_key=settings.cloudinary_api_key,
            api_secret=settings.cloudinary_api_secret,
            project_name=settings.project_name,
            production=settings.is_production,
            **kwargs,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def validate(self, content: bytes, content_type: Optional[str]) -> None:
        """Reject anything but a non-empty JPEG/PNG/GIF of at most 5 MB."""
        signatures = ALLOWED_MIME_TYPES.get((content_type or "").lower())
        if signatures is None:
            logger.warning("avatar_rejected", reason="mime_type", content_type=content_type)
            raise ValidationError("unsupported image type", error_code=ErrorCodes.MEDIA.INVALID_FILE)
        if not content:
            logger.warning("avatar_rejected", reason="empty")
            raise ValidationError("empty file", error_code=ErrorCodes.MEDIA.INVALID_FILE)
        if len(content) > MAX_AVATAR_BYTES:
            logger.warning("avatar_rejected", reason="size", size=len(content))
            raise ValidationError("file too large", error_code=ErrorCodes.MEDIA.INVALID_FILE)
        if not any(content.startswith(sig) for sig in signatures):
            logger.warning("avatar_rejected", reason="signature", content_type=content_type)
            raise ValidationError(
                "file content does not match its type", error_code=ErrorCodes.MEDIA.INVALID_FILE
            )

    def _sign(self, params: Mapping[str, Any]) -> str:
        to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
        return hashlib.sha1(f"{to_sign}{self.api_secret}".encode()).hexdigest()

    def _signed_form(self, params: Mapping[str, Any]) -> dict[str, str]:
        stamped = {**params, "timestamp": int(time.time())}
        return {
            **{key: str(value) for key, value in stamped.items()},
            "api_key": str(self.api_key),
            "signature": self._sign(stamped),
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0), transport=self._transport
        )

    def _require_configured(self) -> None:
        if not self.is_configured:
            logger.error("avatar_storage_not_configured")
            raise ServiceError(
                "image storage is not configured",
                status_code=503,
                error_code=ErrorCodes.SYSTEM.SERVICE_UNAVAILABLE,
            )

    async def upload(
        self, user_id: str, content: bytes, content_type: Optional[str], filename: str = "avatar"
    ) -> UploadedImage:
        self.validate(content, content_type)
        self._require_configured()
        public_id = f"{self.folder}/{user_id}/avatar-{int(time.time() * 1000)}"
        form = self._signed_form({"public_id": public_id})
        url = f"{self.API_BASE}/{self.cloud_name}/image/upload"
        try:
            async with self._client() as client:
                response = await client.post(
                    url, data=form, files={"file": (filename, content, content_type)}
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "avatar_upload_api_error",
                user_id=user_id,
                status_code=e.response.status_code,
                error=str(e),
            )
            raise ServerError("upload failed", error_code=ErrorCodes.MEDIA.UPLOAD_FAILED) from e
        except httpx.TimeoutException as e:
            logger.error("avatar_upload_timeout", user_id=user_id, size=len(content), error=str(e))
            raise ServerError("upload timed out", error_code=ErrorCodes.MEDIA.UPLOAD_FAILED) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("avatar_upload_error", user_id=user_id, error=str(e))
            raise ServerError("upload failed", error_code=ErrorCodes.MEDIA.UPLOAD_FAILED) from e

        secure_url = payload.get("secure_url") if isinstance(payload, dict) else None
        if not secure_url:
            logger.error("avatar_upload_missing_url", user_id=user_id)
            raise ServerError("upload failed", error_code=ErrorCodes.MEDIA.UPLOAD_FAILED)
        logger.info("avatar_uploaded", user_id=user_id, public_id=payload.get("public_id"))
        return UploadedImage(
            url=secure_url,
            public_id=payload.get("public_id", public_id),
            version=payload.get("version"),
        )

    async def delete(self, public_id: str) -> None:
        self._require_configured()
        form = self._signed_form({"public_id": public_id})
        url = f"{self.API_BASE}/{self.cloud_name}/image/destroy"
        try:
            async with self._client() as client:
                response = await client.post(url, data=form)
                response.raise_for_status()
                result = response.json().get("result")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error("avatar_delete_error", public_id=public_id, error=str(e))
            raise ServerError("delete failed", error_code=ErrorCodes.MEDIA.DELETE_FAILED) from e
        if result not in {"ok", "not found"}:
            logger.error("avatar_delete_rejected", public_id=public_id, result=result)
            raise ServerError("delete failed", error_code=ErrorCodes.MEDIA.DELETE_FAILED)

    @staticmethod
    def extract_public_id(url: Optional[str]) -> Optional[str]:
        """Recover the public id from a Cloudinary delivery URL.

        ``https://res.cloudinary.com/<cloud>/image/upload/v17/app/dev/avatars/u/avatar-1.png``
        yields ``app/dev/avatars/u/avatar-1``. Returns None for foreign URLs.
        """
        if not url:
            return None
        path = unquote(urlparse(url).path)
        _, marker, rest = path.partition("/upload/")
        if not marker or not rest:
            return None
        segments = [s for s in rest.split("/") if s]
        # drop transformation segments and the version prefix
        for index, segment in enumerate(segments):
            if _VERSION_SEGMENT.match(segment):
                segments = segments[index + 1:]
                break
        if not segments:
            return None
        last = segments[-1]
        if "." in last:
            segments[-1] = last.rsplit(".", 1)[0]
        return "/".join(segments)
