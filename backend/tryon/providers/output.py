"""Normalize raw provider output to a single result locator.

Backends answer in different shapes: a bare URL, a list of URLs, a file
handle exposing ``.url``, a byte stream that decodes to JSON or text, or a
dict holding the URL under one of several field names. Each shape has its
own strategy; strategies are tried in ``EXTRACTION_STRATEGIES`` order and
the first non-empty answer wins.
"""

import json
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable, Mapping
from typing import Any

import structlog

from tryon.core.exceptions import OutputExtractionFailed

logger = structlog.get_logger(__name__)

# Probed in this order on structured output
LOCATOR_FIELDS: tuple[str, ...] = ("url", "image", "output", "result", "images")

Strategy = Callable[[Any], Awaitable[str | None]]


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


async def from_locator(output: Any) -> str | None:
    """A bare string, or a file handle exposing ``url`` (replicate FileOutput)."""
    if isinstance(output, str):
        return _clean(output)
    url = getattr(output, "url", None)
    if callable(url):
        url = url()
    return _clean(url)


async def from_sequence(output: Any) -> str | None:
    """A list/tuple of locators; the first element is canonical."""
    if not isinstance(output, (list, tuple)) or not output:
        return None
    return await extract_first(output[0])


async def from_stream(output: Any) -> str | None:
    """Raw bytes or a (possibly async) chunk stream, buffered then decoded."""
    if isinstance(output, (bytes, bytearray)):
        buffered = bytes(output)
    elif isinstance(output, AsyncIterable):
        chunks = [chunk async for chunk in output]
        buffered = b"".join(_as_bytes(c) for c in chunks)
    elif isinstance(output, Iterable) and not isinstance(output, (str, list, tuple, Mapping)):
        buffered = b"".join(_as_bytes(c) for c in output)
    else:
        return None

    text = buffered.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        decoded = json.loads(text)
    except ValueError:
        return text
    return await extract_first(decoded)


async def from_mapping(output: Any) -> str | None:
    """A structured object; try ``LOCATOR_FIELDS`` in order."""
    if not isinstance(output, Mapping):
        return None
    for field_name in LOCATOR_FIELDS:
        value = output.get(field_name)
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        locator = await from_locator(value)
        if locator:
            return locator
    return None


def _as_bytes(chunk: Any) -> bytes:
    if isinstance(chunk, (bytes, bytearray)):
        return bytes(chunk)
    return str(chunk).encode("utf-8")


EXTRACTION_STRATEGIES: tuple[Strategy, ...] = (
    from_locator,
    from_sequence,
    from_stream,
    from_mapping,
)


async def extract_first(output: Any) -> str | None:
    """Run every strategy in order; return the first locator found, else None."""
    for strategy in EXTRACTION_STRATEGIES:
        locator = await strategy(output)
        if locator:
            return locator
    return None


async def extract_locator(provider: str, output: Any) -> str:
    """Extract the result locator or raise ``OutputExtractionFailed``."""
    locator = await extract_first(output)
    if locator is None:
        output_type = type(output).__name__
        logger.warning("provider_output_unrecognized", provider=provider, output_type=output_type)
        raise OutputExtractionFailed(provider, output_type)
    return locator
