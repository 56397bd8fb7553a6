import json
from typing import Any


def parse_json_message(line: str) -> dict[str, Any] | None:
    """Parse one stdin line as a JSON message.

    Args:
        line: Raw line from the local client

    Returns:
        Parsed message dict, or None if the line is blank, not JSON or not
        a JSON object
    """
    line = line.strip()
    if not line:
        return None  # Ignore empty lines

    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None

    if not isinstance(message, dict):
        return None
    return message


def serialize_message(message: dict[str, Any]) -> str:
    """Serialize a message to a single compact JSON line.

    Raises:
        ValueError: If the message is not JSON serializable
    """
    try:
        return json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize message to JSON: {e}") from e
