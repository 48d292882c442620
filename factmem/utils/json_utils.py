"""
JSON utilities for cleaning LLM responses.
"""

import json
from typing import Any, List


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_list(response: str) -> List[Any]:
    """Parse an LLM response that should hold a JSON array.

    Raises:
        json.JSONDecodeError: If the cleaned response is not valid JSON
        ValueError: If the JSON value is not an array
    """
    data = json.loads(clean_json_response(response))
    if not isinstance(data, list):
        raise ValueError(f'Expected JSON array, got {type(data).__name__}')
    return data
