"""错误信息脱敏."""

import re
from collections.abc import Iterable

_TOKEN_PATTERNS = [
    re.compile(r"(Bearer\s+)[^\s,;\"']+", re.IGNORECASE),
    re.compile(r"(GoogleLogin\s+auth=)[^\s,;\"']+", re.IGNORECASE),
    re.compile(r"((?:access_token|refresh_token|api_key|apikey)[\"']?\s*[=:]\s*[\"']?)[^\s,;&\"']+", re.IGNORECASE),
]


def sanitize_error(message: str, secrets: Iterable[str] = (), max_length: int = 500) -> str:
    """去掉错误信息中的 token 等敏感值，并限制长度."""
    for secret in secrets:
        if secret and len(secret) >= 4:
            message = message.replace(secret, "***")
    for pattern in _TOKEN_PATTERNS:
        message = pattern.sub(r"\1***", message)
    if len(message) > max_length:
        message = message[:max_length] + "..."
    return message
