"""
User photo loading and the client for the external try-on image generator.

The generator is an opaque HTTP service: it receives the shopper photo and the
product snapshot and answers with a result image URL (or data URL) or an
error. Only success/failure matters to the rest of the service.
"""
import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from tryon_widget_server.domain import ProductSnapshot
from tryon_widget_server.errors import ImageError
from tryon_widget_server.logging_config import get_logger

logger = get_logger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)

# Leading bytes of the image formats the generator accepts
_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


@dataclass
class UserPhoto:
    """A validated shopper photo"""
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


@dataclass
class GenerationResult:
    """Outcome reported by the image generator"""
    success: bool
    image_url: Optional[str] = None
    error: Optional[str] = None


class GenerationError(Exception):
    """The image generator could not be reached or answered garbage"""


def detect_image_type(data: bytes) -> Optional[str]:
    """Sniff the MIME type from magic bytes; None if not a supported image"""
    for signature, mime_type in _SIGNATURES:
        if data.startswith(signature):
            return mime_type
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _validate_image_bytes(data: bytes, max_bytes: int) -> UserPhoto:
    if not data:
        raise ImageError("INVALID_USER_IMAGE", "Photo is empty")
    if len(data) > max_bytes:
        raise ImageError(
            "IMAGE_TOO_LARGE",
            f"Photo is {len(data)} bytes, maximum is {max_bytes}",
        )
    mime_type = detect_image_type(data)
    if mime_type is None:
        raise ImageError("INVALID_USER_IMAGE", "Photo is not a JPEG, PNG, GIF or WEBP image")
    return UserPhoto(data=data, mime_type=mime_type)


def decode_photo(photo: str, max_bytes: int) -> UserPhoto:
    """Decode a base64 string or ``data:`` URL into a validated photo"""
    match = _DATA_URL_RE.match(photo.strip())
    payload = match.group("data") if match else photo.strip()

    # Reject oversized payloads before decoding them
    if len(payload) * 3 // 4 > max_bytes + 3:
        raise ImageError("IMAGE_TOO_LARGE", f"Photo exceeds maximum size of {max_bytes} bytes")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ImageError("INVALID_USER_IMAGE", "Photo is not valid base64")
    return _validate_image_bytes(data, max_bytes)


async def fetch_photo(
    url: str,
    max_bytes: int,
    timeout: float = 15.0,
    client: Optional[httpx.AsyncClient] = None,
) -> UserPhoto:
    """
    Download a photo from a URL and validate it.

    The body is streamed and the download stops as soon as it exceeds
    ``max_bytes``; a larger ``Content-Length`` is rejected before reading.
    """
    if not url.startswith(("http://", "https://")):
        raise ImageError("INVALID_USER_IMAGE", "Photo URL must be http or https")

    too_large = ImageError("IMAGE_TOO_LARGE", f"Photo exceeds maximum size of {max_bytes} bytes")
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            declared = response.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise too_large
            data = bytearray()
            async for chunk in response.aiter_bytes():
                data.extend(chunk)
                if len(data) > max_bytes:
                    raise too_large
    except httpx.HTTPError as e:
        logger.info("photo_fetch_failed", url=url, error=str(e))
        raise ImageError("INVALID_USER_IMAGE", f"Could not fetch photo: {e}")
    finally:
        if owns_client:
            await client.aclose()

    return _validate_image_bytes(bytes(data), max_bytes)


async def load_user_photo(
    photo: Optional[str],
    photo_url: Optional[str],
    max_bytes: int,
    timeout: float = 15.0,
    client: Optional[httpx.AsyncClient] = None,
) -> UserPhoto:
    """
    Load the shopper photo from inline data or a URL.

    Raises:
        ImageError: MISSING_PHOTO, INVALID_USER_IMAGE or IMAGE_TOO_LARGE
    """
    if photo:
        return decode_photo(photo, max_bytes)
    if photo_url:
        return await fetch_photo(photo_url, max_bytes, timeout=timeout, client=client)
    raise ImageError("MISSING_PHOTO")


class ImageGenerationClient:
    """HTTP client for the try-on image generator"""

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "ImageGenerationClient":
        return cls(
            url=settings.image_generation_url,
            api_key=settings.image_generation_api_key,
            timeout=settings.image_generation_timeout_seconds,
        )

    def _build_payload(self, photo: UserPhoto, product: ProductSnapshot) -> Dict[str, Any]:
        return {
            "userImage": photo.to_data_url(),
            "productImage": product.image,
            "product": product.to_dict(),
        }

    async def generate(self, photo: UserPhoto, product: ProductSnapshot) -> GenerationResult:
        """
        Request a try-on image.

        Raises:
            GenerationError: if the generator is unconfigured, unreachable, or
                returns a malformed response
        """
        if not self.url:
            raise GenerationError("Image generation service is not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=self._build_payload(photo, product),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise GenerationError(f"Image generation request failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise GenerationError(f"Image generation returned invalid JSON (HTTP {response.status_code})") from e
        if not isinstance(body, dict):
            raise GenerationError("Image generation response is not an object")

        if response.status_code >= 400 or not body.get("success", True):
            error = body.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            return GenerationResult(
                success=False,
                error=str(error) if error else f"HTTP {response.status_code}",
            )

        image_url = body.get("imageUrl") or body.get("image")
        if not image_url:
            raise GenerationError("Image generation response has no image")
        return GenerationResult(success=True, image_url=image_url)
