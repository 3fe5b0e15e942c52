"""Tests for normalizing provider output to a single result locator."""

import pytest

from tryon.core.exceptions import OutputExtractionFailed
from tryon.providers.output import extract_locator

pytestmark = pytest.mark.unit

URL = "https://cdn.example.com/out.jpg"


class FileOutput:
    """Mimics replicate's FileOutput: iterable bytes plus a ``url`` attribute."""

    def __init__(self, url):
        self.url = url

    def __iter__(self):
        yield b"\xff\xd8binary-image"


async def test_bare_string():
    assert await extract_locator("p", f"  {URL}  ") == URL


async def test_sequence_first_element_is_canonical():
    assert await extract_locator("p", [URL, "https://cdn.example.com/other.jpg"]) == URL


async def test_nested_sequence():
    assert await extract_locator("p", [[URL]]) == URL


async def test_file_handle_url_wins_over_stream():
    assert await extract_locator("p", FileOutput(URL)) == URL


async def test_bytes_decoded_as_text():
    assert await extract_locator("p", URL.encode()) == URL


async def test_bytes_decoded_as_json():
    assert await extract_locator("p", b'{"output": ["' + URL.encode() + b'"]}') == URL


async def test_async_stream_is_buffered():
    async def chunks():
        yield b"https://cdn.example.com/"
        yield b"out.jpg"

    assert await extract_locator("p", chunks()) == URL


async def test_mapping_checks_fields_in_order():
    output = {"result": "https://cdn.example.com/result.jpg", "image": URL}
    assert await extract_locator("p", output) == URL


async def test_mapping_images_list():
    assert await extract_locator("p", {"images": [URL]}) == URL


async def test_mapping_skips_empty_fields():
    assert await extract_locator("p", {"url": "", "output": URL}) == URL


@pytest.mark.parametrize("output", [None, "", [], {}, {"status": "succeeded"}, 42, b""])
async def test_unrecognized_output_raises(output):
    with pytest.raises(OutputExtractionFailed) as exc_info:
        await extract_locator("nano-banana", output)
    assert exc_info.value.provider == "nano-banana"
