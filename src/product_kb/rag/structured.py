"""Decoding of structured (schema-validated) text-generation output."""

import json
import logging
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from product_kb.rag.exceptions import LLMResponseError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _FENCE_RE.sub("", text.strip()).strip()


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first complete JSON object found in the text.

    Raises:
        ValueError: If the text contains no decodable JSON object
    """
    cleaned = strip_code_fences(text)
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", cleaned):
        try:
            obj, _ = decoder.raw_decode(cleaned, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    raise ValueError("no JSON object found in response")


def validate_structured(data: Any, schema: type[T], provider: str) -> T:
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise LLMResponseError(
            f"Response does not match {schema.__name__}: {e.errors()[0]['msg']}", provider=provider
        ) from e


def decode_structured_text(text: str, schema: type[T], provider: str = "unknown") -> T:
    """Decode free text into ``schema``.

    Used by providers without native structured output: strips code
    fences, takes the first JSON object and validates it.

    Raises:
        LLMResponseError: If no object is found or validation fails
    """
    try:
        data = extract_json_object(text)
    except ValueError as e:
        logger.debug(f"Undecodable {provider} response: {text[:500]}")
        raise LLMResponseError(str(e), provider=provider) from e
    return validate_structured(data, schema, provider)


def schema_instructions(schema: type[BaseModel]) -> str:
    """Prompt suffix asking for JSON matching the schema."""
    return (
        "Respond ONLY with a JSON object matching this JSON schema. "
        "No markdown, no explanation.\n"
        f"{json.dumps(schema.model_json_schema())}"
    )
