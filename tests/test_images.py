from io import BytesIO

import httpx
import pytest
from PIL import Image

from app.errors import UnsupportedImageFormat, WatermarkFailure
from app.models.conversation import ImageRef
from app.services.business_settings import WatermarkConfig
from app.services.images import ImageIngestionPipeline, decode_data_uri, sniff_mime
from app.services.watermark import apply_watermark
from app.services.woocommerce import WooCommerceClient
from tests._support import data_uri, image_bytes


@pytest.fixture
def pipeline(woo, image_http):
    return ImageIngestionPipeline(woo, image_http)


async def test_each_image_succeeds_or_fails_on_its_own(pipeline, woo):
    woo.fail_uploads = {"bad.png"}
    refs = [
        ImageRef(data_uri=data_uri(), filename="a.png"),
        ImageRef(data_uri=data_uri(), filename="bad.png"),
        ImageRef(url="https://img.test/c.jpg"),
    ]

    result = await pipeline.ingest(refs)

    assert [u.url for u in result.uploaded] == [
        "https://shop.test/uploads/a.png",
        "https://shop.test/uploads/c.jpg",
    ]
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.reference.filename == "bad.png"
    assert failure.kind == "image_upload_error"


async def test_remote_fetch_errors_are_reported(pipeline, woo):
    refs = [
        ImageRef(url="https://img.test/missing.jpg"),
        ImageRef(url="https://img.test/page.html"),
    ]

    result = await pipeline.ingest(refs)

    assert result.uploaded == []
    assert [f.kind for f in result.failures] == ["image_fetch_error", "unsupported_image_format"]
    assert woo.uploads == []


async def test_mime_type_is_sniffed_for_generic_content(pipeline, woo):
    refs = [
        ImageRef(url="https://img.test/download/octet"),
        ImageRef(data=image_bytes(fmt="JPEG")),
    ]

    result = await pipeline.ingest(refs)

    assert len(result.uploaded) == 2
    uploaded = {u["filename"]: u["mime_type"] for u in woo.uploads}
    assert uploaded == {"octet.png": "image/png", "product_image_2.jpg": "image/jpeg"}


async def test_invalid_data_uri_is_unsupported(pipeline):
    result = await pipeline.ingest([
        ImageRef(data_uri="not-a-data-uri"),
        ImageRef(data_uri="data:text/plain;base64,aGVsbG8="),
    ])

    assert [f.kind for f in result.failures] == ["unsupported_image_format"] * 2


async def test_already_uploaded_images_pass_through(pipeline, woo):
    refs = [ImageRef(media_id=5, url="https://shop.test/5.jpg", alt_text="Front")]

    result = await pipeline.ingest(refs, alt_texts=["Better alt"])

    assert woo.uploads == []
    assert result.uploaded[0].media_id == 5
    assert result.uploaded[0].alt_text == "Better alt"


async def test_watermark_is_applied_when_requested(pipeline, woo):
    config = WatermarkConfig(image_url="https://img.test/logo.png", placement="center")
    original = image_bytes()

    result = await pipeline.ingest([ImageRef(data=original, filename="sofa.png")], config, True)

    assert result.warnings == []
    upload = woo.uploads[0]
    assert upload["mime_type"] == "image/jpeg"
    assert upload["filename"] == "sofa.jpg"
    assert upload["data"] != original


async def test_watermark_skipped_unless_requested(pipeline, woo):
    config = WatermarkConfig(image_url="https://img.test/logo.png")
    original = image_bytes()

    await pipeline.ingest([ImageRef(data=original)], config, False)

    assert woo.uploads[0]["data"] == original
    assert woo.uploads[0]["mime_type"] == "image/png"


async def test_unavailable_watermark_uploads_plain_image(pipeline, woo):
    config = WatermarkConfig(image_url="https://img.test/missing.jpg")
    original = image_bytes()

    result = await pipeline.ingest([ImageRef(data=original)], config, True)

    assert len(result.uploaded) == 1
    assert len(result.warnings) == 1
    assert woo.uploads[0]["data"] == original


def test_apply_watermark_keeps_base_size():
    config = WatermarkConfig(image_url="x", placement="bottom-left", opacity=0.5, scale=25)

    output = apply_watermark(image_bytes(size=(200, 100)), image_bytes((0, 0, 0, 255), (40, 40)), config)

    with Image.open(BytesIO(output)) as img:
        assert img.format == "JPEG"
        assert img.size == (200, 100)


def test_apply_watermark_rejects_unreadable_overlay():
    config = WatermarkConfig(image_url="x")

    with pytest.raises(WatermarkFailure):
        apply_watermark(image_bytes(), b"not an image", config)


def test_decode_data_uri():
    data, mime = decode_data_uri(data_uri(b"abc", "image/webp"))
    assert (data, mime) == (b"abc", "image/webp")

    with pytest.raises(UnsupportedImageFormat):
        decode_data_uri("data:image/png;base64,@@@")


def test_sniff_mime():
    assert sniff_mime(image_bytes(fmt="JPEG")) == "image/jpeg"
    assert sniff_mime(b"plain text") is None


async def test_malformed_media_response_fails_only_that_image(image_http):
    media_ids = iter([301, 302])

    def handler(request):
        if "b.png" in request.headers["content-disposition"]:
            return httpx.Response(200, text="<html>maintenance</html>")
        media_id = next(media_ids)
        return httpx.Response(201, json={"id": media_id, "source_url": f"https://shop.test/{media_id}.png"})

    client = WooCommerceClient(
        "https://shop.test/wp-json/wc/v3", "ck_test", "cs_test", transport=httpx.MockTransport(handler),
    )
    pipeline = ImageIngestionPipeline(client, image_http)
    refs = [ImageRef(data_uri=data_uri(), filename=name) for name in ("a.png", "b.png", "c.png")]

    result = await pipeline.ingest(refs)
    await client.close()

    assert len(result.uploaded) == 2
    assert [f.reference.filename for f in result.failures] == ["b.png"]
    assert result.failures[0].kind == "image_upload_error"


async def test_unexpected_media_host_error_becomes_failure(image_http):
    class BrokenHost:
        async def upload_media(self, data, filename, mime_type):
            raise RuntimeError("connection pool exhausted")

    pipeline = ImageIngestionPipeline(BrokenHost(), image_http)

    result = await pipeline.ingest([ImageRef(data_uri=data_uri(), filename="a.png")])

    assert result.uploaded == []
    assert result.failures[0].kind == "image_upload_error"
    assert "connection pool exhausted" in result.failures[0].detail


async def test_finished_uploads_are_reported_as_they_land(pipeline):
    landed = []
    refs = [
        ImageRef(data_uri=data_uri(), filename="a.png"),
        ImageRef(media_id=5, url="https://shop.test/5.jpg"),
    ]

    result = await pipeline.ingest(refs, on_uploaded=landed.append)

    assert sorted(i.media_id for i in landed) == sorted(i.media_id for i in result.uploaded)
    assert {i.source for i in landed} == {ref.fingerprint() for ref in refs}
