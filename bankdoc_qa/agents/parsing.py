"""Helpers for reading JSON out of free-form model output."""

from __future__ import annotations

import json
import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_decoder = json.JSONDecoder()


def extract_json_object(text: str) -> dict | None:
    """
    Return the first JSON object embedded in `text`, or None.

    Models often wrap JSON in prose or ```json fences; scanning from each
    "{" with raw_decode tolerates both.
    """
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def parse_model_output(text: str, schema: type[ModelT]) -> ModelT | None:
    """Extract and validate a JSON object; None on any failure."""
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("No JSON object found in model output: %r", text[:200])
        return None
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        logger.warning("Model output failed validation: %s", e)
        return None
