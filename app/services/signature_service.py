import base64
import hashlib
import hmac
from typing import Union


def compute_signature(body: Union[bytes, str], channel_secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw webhook body, as LINE sends it."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: Union[bytes, str], channel_secret: str, signature: str) -> bool:
    # Must run over the bytes as received; re-serialized JSON will not match.
    expected = compute_signature(body, channel_secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
