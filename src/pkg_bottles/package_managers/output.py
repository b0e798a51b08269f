"""Tolerant parsing of package manager output."""

import json
import re
from typing import Any

from pkg_bottles.errors import PackageManagerError
from pkg_bottles.types import JsonOutput

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
PROGRESS_LINE = re.compile(r"^[^\n]*\r(?!\n)", re.MULTILINE)

PREVIEW_LENGTH = 100


def clean_output(text: str) -> str:
    """Strip ANSI escapes and carriage-return progress redraws."""
    return PROGRESS_LINE.sub("", ANSI_ESCAPE.sub("", text)).strip()


def preview(text: str, length: int = PREVIEW_LENGTH) -> str:
    return text[:length] + ("..." if len(text) > length else "")


def parse_json_output(output: str, context: str | None = None) -> JsonOutput:
    """Find the JSON payload in ``output``.

    Banners around the payload are ignored. Output with no bracket at all
    yields an empty list with ``found=False``; brackets that never decode
    raise ``JSON_PARSE_ERROR``.
    """
    text = clean_output(output)

    if not text or text == "[]":
        return JsonOutput(value=[], found=True)

    try:
        return JsonOutput(value=json.loads(text), found=True)
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    saw_bracket = False
    for index, char in enumerate(text):
        if char not in "[{":
            continue
        saw_bracket = True
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        return JsonOutput(value=value, found=True)

    if not saw_bracket:
        return JsonOutput(value=[], found=False)

    where = f" ({context})" if context else ""
    raise PackageManagerError(
        f"JSON parsing failed{where}",
        code="JSON_PARSE_ERROR",
        suggestion=f"Output was: {preview(text)}",
        details={"context": context},
    )


def expect_list(result: JsonOutput, context: str | None = None) -> list[Any]:
    if not isinstance(result.value, list):
        where = f" ({context})" if context else ""
        raise PackageManagerError(
            f"Expected a JSON array{where}, got {type(result.value).__name__}",
            code="INVALID_JSON_OUTPUT",
            suggestion="Check that the package manager is properly installed and the command executed successfully",
        )
    return result.value
