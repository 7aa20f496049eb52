"""Anti-bot block detection for fetched candidate pages."""

import re
from dataclasses import dataclass
from typing import Optional

BLOCKING_STATUS_CODES = frozenset({403, 407, 429})

# (pattern, block type); first match wins
BLOCK_PATTERNS = [
    (r"incapsula", "incapsula"),
    (r"captcha", "captcha"),
    (r"access denied", "access_denied"),
    (r"request unsuccessful", "access_denied"),
    (r"\bbot\b", "bot_detected"),
    (r"forbidden", "access_denied"),
    (r"proxy authentication", "proxy_auth"),
]

_COMPILED = [(re.compile(p, re.IGNORECASE), block_type) for p, block_type in BLOCK_PATTERNS]


@dataclass(frozen=True)
class BlockCheck:
    blocked: bool
    block_type: Optional[str] = None


def detect_block(status_code: int, body: str) -> BlockCheck:
    """
    Classify a response as blocked by anti-bot defenses.

    Args:
        status_code: HTTP status of the response
        body: Response body as text

    Returns:
        BlockCheck; ``block_type`` names the first marker found, or
        ``http_<status>`` when only the status code gave it away
    """
    for pattern, block_type in _COMPILED:
        if pattern.search(body or ""):
            return BlockCheck(True, block_type)
    if status_code in BLOCKING_STATUS_CODES:
        return BlockCheck(True, f"http_{status_code}")
    return BlockCheck(False)
