"""
Change-detection fingerprints for media objects.

Hosted files come back from the remote API behind signed URLs that expire and
are re-issued on every fetch while the bytes stay the same. Comparing URL
strings would re-download every asset on every sync, so the fingerprint uses
the upstream content hash when one is provided and otherwise the stable part
of the URL (scheme, host and path, without the signature query string).
"""

import hashlib
from typing import Optional
from urllib.parse import urlsplit


def compute_fingerprint(url: str, content_hash: Optional[str] = None) -> str:
    if content_hash:
        return f"hash:{content_hash}"
    parts = urlsplit(url)
    stable = f"{parts.scheme}://{parts.netloc}{parts.path}"
    return f"url:{hashlib.sha256(stable.encode('utf-8')).hexdigest()}"
