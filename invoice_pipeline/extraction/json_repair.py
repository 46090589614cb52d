"""Tolerant JSON parsing for model output.

Models wrap JSON in markdown fences, add commentary, or stop mid-object when
they hit their output limit. These helpers recover as much structure as
possible and raise ModelFormatError only when nothing usable remains.
"""

import json
import logging
import re
from typing import Any

from invoice_pipeline.shared.errors import ModelFormatError

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)(?:```|$)")
ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")
FLAT_OBJECT_PATTERN = re.compile(r"\{[^{}]+\}")
TRAILING_COMMA = re.compile(r",\s*([}\]])")

SCRAPED_STRING_FIELDS = ("supplier", "invoiceNumber", "invoiceDate", "currency")
SCRAPED_NUMBER_FIELDS = ("totalAmount", "totalExcludingTax", "taxAmount")

_decoder = json.JSONDecoder()


def strip_code_fences(text: str) -> str:
    """Return the content of the first markdown code block, or the text itself."""
    match = FENCE_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def remove_trailing_commas(text: str) -> str:
    return TRAILING_COMMA.sub(r"\1", text)


def parse_json_array(response_text: str) -> list[Any]:
    """Parse the outermost JSON array in a model response.

    Falls back to parsing each flat {...} object line by line when the
    array as a whole is not valid JSON.

    Raises:
        ModelFormatError: If neither the array nor any single object parses
    """
    cleaned = strip_code_fences(response_text)
    match = ARRAY_PATTERN.search(cleaned)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError as e:
            logger.warning(f"JSON array parse failed, salvaging objects: {e}")

    salvaged = salvage_objects(cleaned)
    if salvaged:
        return salvaged
    raise ModelFormatError("No JSON array or objects found in model response")


def salvage_objects(text: str) -> list[dict[str, Any]]:
    """Parse every flat {...} object found line by line, skipping bad ones."""
    objects: list[dict[str, Any]] = []
    for line in text.splitlines():
        for candidate in FLAT_OBJECT_PATTERN.findall(line):
            parsed = _try_load(candidate)
            if isinstance(parsed, dict):
                objects.append(parsed)
    return objects


def extract_balanced_object(text: str) -> str | None:
    """Return the first complete top-level {...} block, honouring strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif not in_string:
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
    return None


def repair_truncated_json(text: str) -> Any:
    """Parse JSON that was cut off part-way through.

    Walks back through the points where the document could have ended
    cleanly (after a closed object/array, or just before a separating
    comma), closes whatever brackets are still open at that point and
    returns the first prefix that parses. Everything complete before the
    truncation point survives; the partial tail is dropped.

    Raises:
        ModelFormatError: If no prefix can be closed into valid JSON
    """
    body = text.rstrip()
    cut_points = [len(body)]
    in_string = False
    escaped = False

    for index, char in enumerate(body):
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif not in_string:
            if char in "}]":
                cut_points.append(index + 1)
            elif char == ",":
                cut_points.append(index)

    for cut in sorted(set(cut_points), reverse=True):
        prefix = body[:cut]
        closers = _open_closers(prefix)
        if closers is None:
            continue
        try:
            return json.loads(remove_trailing_commas(prefix + "".join(reversed(closers))))
        except json.JSONDecodeError:
            continue
    raise ModelFormatError("Truncated JSON could not be repaired")


def _open_closers(text: str) -> list[str] | None:
    """Closers needed for the brackets left open, None if inside a string."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif not in_string:
            if char in "{[":
                stack.append("}" if char == "{" else "]")
            elif char in "}]" and stack:
                stack.pop()
    return None if in_string else stack


def parse_possibly_truncated(text: str) -> Any:
    """Strict parse first, then repair of a truncated document.

    Trailing commentary after a complete JSON value is ignored.

    Raises:
        ModelFormatError: If the text is unparseable even after repair
    """
    cleaned = strip_code_fences(text)
    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if not starts:
        raise ModelFormatError("No JSON structure in model response")
    candidate = cleaned[min(starts) :]

    try:
        value, _ = _decoder.raw_decode(candidate)
        return value
    except json.JSONDecodeError:
        pass

    try:
        return json.loads(remove_trailing_commas(candidate))
    except json.JSONDecodeError:
        logger.warning("Model JSON is incomplete, attempting truncation repair")

    return repair_truncated_json(candidate)


def scrape_partial_invoice(text: str) -> dict[str, Any]:
    """Regex-scrape known invoice fields and complete line-item objects.

    Last resort when even repaired JSON does not parse.
    """
    result: dict[str, Any] = {}
    for name in SCRAPED_STRING_FIELDS:
        match = re.search(rf'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)"', text)
        if match:
            result[name] = match.group(1)
    for name in SCRAPED_NUMBER_FIELDS:
        match = re.search(rf'"{name}"\s*:\s*(-?\d+(?:\.\d+)?)', text)
        if match:
            result[name] = float(match.group(1))

    items_start = text.find('"lineItems"')
    items: list[dict[str, Any]] = []
    if items_start != -1:
        for block in FLAT_OBJECT_PATTERN.findall(text[items_start:]):
            parsed = _try_load(block)
            if isinstance(parsed, dict):
                items.append(parsed)
    result["lineItems"] = items
    return result


def _try_load(block: str) -> Any:
    try:
        return json.loads(remove_trailing_commas(block))
    except json.JSONDecodeError:
        return None
