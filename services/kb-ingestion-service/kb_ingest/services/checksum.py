from __future__ import annotations

import hashlib


def calculate_checksum(content: str | None) -> str:
    """SHA-256 hex digest of the UTF-8 encoded content; ``None`` hashes as empty text."""
    if not isinstance(content, str):
        content = ""
    return hashlib.sha256(content.encode("utf-8", errors="surrogatepass")).hexdigest()
