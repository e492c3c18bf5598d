"""
Tests for shopper photo loading and the image generation client

HTTP calls go through httpx.MockTransport, so no network is needed.
"""

import base64
import json

import httpx
import pytest
from tryon_widget_server.errors import ImageError
from tryon_widget_server.image_service import (
    GenerationError,
    ImageGenerationClient,
    UserPhoto,
    decode_photo,
    detect_image_type,
    fetch_photo,
    load_user_photo,
)

from tests.conftest import JPEG_BYTES, PNG_BYTES

GENERATOR_URL = "http://generator.test/generate"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestDetectImageType:
    """Test magic-byte sniffing"""

    @pytest.mark.parametrize("data,expected", [
        (JPEG_BYTES, "image/jpeg"),
        (PNG_BYTES, "image/png"),
        (b"GIF89a" + b"\x00" * 10, "image/gif"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b"%PDF-1.7", None),
        (b"", None),
    ])
    def test_signatures(self, data, expected):
        """Test supported and unsupported formats"""
        assert detect_image_type(data) == expected


class TestDecodePhoto:
    """Test inline photo decoding"""

    def test_plain_base64(self):
        """Test raw base64 payload"""
        photo = decode_photo(_b64(PNG_BYTES), max_bytes=1024)

        assert photo.mime_type == "image/png"
        assert photo.data == PNG_BYTES

    def test_data_url(self):
        """Test data URL payload"""
        photo = decode_photo(f"data:image/jpeg;base64,{_b64(JPEG_BYTES)}", max_bytes=1024)

        assert photo.mime_type == "image/jpeg"
        assert photo.size == len(JPEG_BYTES)

    def test_invalid_base64(self):
        """Test INVALID_USER_IMAGE for undecodable data"""
        with pytest.raises(ImageError) as exc_info:
            decode_photo("not base64 at all!!", max_bytes=1024)
        assert exc_info.value.code == "INVALID_USER_IMAGE"

    def test_not_an_image(self):
        """Test INVALID_USER_IMAGE for non-image bytes"""
        with pytest.raises(ImageError) as exc_info:
            decode_photo(_b64(b"hello world, plain text"), max_bytes=1024)
        assert exc_info.value.code == "INVALID_USER_IMAGE"

    def test_too_large(self):
        """Test IMAGE_TOO_LARGE"""
        data = PNG_BYTES + b"\x00" * 4096
        with pytest.raises(ImageError) as exc_info:
            decode_photo(_b64(data), max_bytes=1024)
        assert exc_info.value.code == "IMAGE_TOO_LARGE"
        assert exc_info.value.http_status == 400

    def test_round_trip_data_url(self):
        """Test UserPhoto.to_data_url matches its input"""
        photo = UserPhoto(data=PNG_BYTES, mime_type="image/png")
        assert photo.to_data_url() == f"data:image/png;base64,{_b64(PNG_BYTES)}"


class TestFetchPhoto:
    """Test photo download"""

    @pytest.mark.asyncio
    async def test_fetch_success(self):
        """Test downloading a valid image"""
        def handler(request):
            return httpx.Response(200, content=JPEG_BYTES)

        async with _mock_client(handler) as client:
            photo = await fetch_photo("https://img.example.com/me.jpg", 1024, client=client)

        assert photo.mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_fetch_http_error(self):
        """Test INVALID_USER_IMAGE on 404"""
        def handler(request):
            return httpx.Response(404)

        async with _mock_client(handler) as client:
            with pytest.raises(ImageError) as exc_info:
                await fetch_photo("https://img.example.com/missing.jpg", 1024, client=client)
        assert exc_info.value.code == "INVALID_USER_IMAGE"

    @pytest.mark.asyncio
    async def test_fetch_rejects_non_http(self):
        """Test non-http URLs are refused without a request"""
        with pytest.raises(ImageError):
            await fetch_photo("file:///etc/passwd", 1024)

    @pytest.mark.asyncio
    async def test_fetch_too_large(self):
        """Test IMAGE_TOO_LARGE for big downloads"""
        def handler(request):
            return httpx.Response(200, content=JPEG_BYTES + b"\x00" * 2048)

        async with _mock_client(handler) as client:
            with pytest.raises(ImageError) as exc_info:
                await fetch_photo("https://img.example.com/big.jpg", 1024, client=client)
        assert exc_info.value.code == "IMAGE_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_fetch_stops_reading_oversized_stream(self):
        """Test an endless body is abandoned once it passes the size cap"""
        chunks_sent = []

        async def body():
            yield JPEG_BYTES
            for _ in range(64):
                chunks_sent.append(1)
                yield b"\x00" * 1024

        def handler(request):
            return httpx.Response(200, content=body())

        async with _mock_client(handler) as client:
            with pytest.raises(ImageError) as exc_info:
                await fetch_photo("https://img.example.com/endless.jpg", 1024, client=client)

        assert exc_info.value.code == "IMAGE_TOO_LARGE"
        assert len(chunks_sent) <= 2

    @pytest.mark.asyncio
    async def test_fetch_rejects_large_content_length(self):
        """Test a declared Content-Length over the cap is refused up front"""
        def handler(request):
            return httpx.Response(200, headers={"Content-Length": "5000000"}, content=JPEG_BYTES)

        async with _mock_client(handler) as client:
            with pytest.raises(ImageError) as exc_info:
                await fetch_photo("https://img.example.com/huge.jpg", 1024, client=client)

        assert exc_info.value.code == "IMAGE_TOO_LARGE"


class TestLoadUserPhoto:
    """Test photo source selection"""

    @pytest.mark.asyncio
    async def test_missing_photo(self):
        """Test MISSING_PHOTO when neither source is given"""
        with pytest.raises(ImageError) as exc_info:
            await load_user_photo(None, None, max_bytes=1024)
        assert exc_info.value.code == "MISSING_PHOTO"

    @pytest.mark.asyncio
    async def test_inline_photo_preferred(self):
        """Test inline data wins over a URL"""
        def handler(request):
            raise AssertionError("URL should not be fetched")

        async with _mock_client(handler) as client:
            photo = await load_user_photo(
                _b64(PNG_BYTES), "https://img.example.com/me.jpg", max_bytes=1024, client=client,
            )
        assert photo.mime_type == "image/png"


class TestImageGenerationClient:
    """Test the generator HTTP client"""

    @pytest.fixture
    def photo(self):
        return UserPhoto(data=PNG_BYTES, mime_type="image/png")

    @pytest.mark.asyncio
    async def test_success(self, photo, product):
        """Test a successful generation"""
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "imageUrl": "https://cdn/out.jpg"})

        client = ImageGenerationClient(
            GENERATOR_URL, api_key="secret", transport=httpx.MockTransport(handler),
        )
        result = await client.generate(photo, product)

        assert result.success is True
        assert result.image_url == "https://cdn/out.jpg"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["productImage"] == product.image
        assert seen["body"]["userImage"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_provider_error_response(self, photo, product):
        """Test an error answer becomes an unsuccessful result"""
        def handler(request):
            return httpx.Response(422, json={"success": False, "error": {"message": "no person found"}})

        client = ImageGenerationClient(GENERATOR_URL, transport=httpx.MockTransport(handler))
        result = await client.generate(photo, product)

        assert result.success is False
        assert result.error == "no person found"

    @pytest.mark.asyncio
    async def test_invalid_json(self, photo, product):
        """Test GenerationError on a non-JSON body"""
        def handler(request):
            return httpx.Response(502, content=b"<html>Bad gateway</html>")

        client = ImageGenerationClient(GENERATOR_URL, transport=httpx.MockTransport(handler))
        with pytest.raises(GenerationError):
            await client.generate(photo, product)

    @pytest.mark.asyncio
    async def test_connection_error(self, photo, product):
        """Test GenerationError when the generator is unreachable"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ImageGenerationClient(GENERATOR_URL, transport=httpx.MockTransport(handler))
        with pytest.raises(GenerationError):
            await client.generate(photo, product)

    @pytest.mark.asyncio
    async def test_not_configured(self, photo, product):
        """Test GenerationError without a URL"""
        with pytest.raises(GenerationError):
            await ImageGenerationClient(None).generate(photo, product)

    def test_from_settings(self, test_settings):
        """Test construction from settings"""
        client = ImageGenerationClient.from_settings(test_settings)

        assert client.url == GENERATOR_URL
        assert client.timeout == 2.0
