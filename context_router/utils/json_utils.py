"""
Helpers for pulling JSON out of free-form LLM output.
"""

import json
import re
from typing import Any, Dict

CODE_FENCE = re.compile(r'```[A-Za-z]*')


def clean_json_response(response: str) -> str:
    """Drop markdown code fences (with or without a language tag) and surrounding whitespace."""
    return CODE_FENCE.sub('', response).strip()


def extract_json_object(response: str) -> Dict[str, Any]:
    """Parse the outermost JSON object embedded in an LLM response.

    Args:
        response: Raw LLM response, possibly wrapped in prose or code fences

    Returns:
        Parsed JSON object

    Raises:
        ValueError: If no JSON object is present or the object is malformed
    """
    cleaned = clean_json_response(response or '')
    start = cleaned.find('{')
    end = cleaned.rfind('}') + 1

    if start == -1 or end <= start:
        raise ValueError('No JSON object found in response')

    try:
        parsed = json.loads(cleaned[start:end])
    except json.JSONDecodeError as e:
        raise ValueError(f'Malformed JSON object in response: {e}')

    if not isinstance(parsed, dict):
        raise ValueError(f'Expected JSON object, got {type(parsed).__name__}')
    return parsed
