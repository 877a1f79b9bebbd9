import hashlib
import hmac
import time

MAX_SKEW_SECONDS = 60 * 5


def verify_feishu_signature(
    encrypt_key: str,
    timestamp: str,
    nonce: str,
    body: bytes,
    signature: str,
    now: float | None = None,
) -> bool:
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False
    if abs((now if now is not None else time.time()) - sent_at) > MAX_SKEW_SECONDS:
        return False
    content = (timestamp + nonce + encrypt_key).encode() + body
    computed = hashlib.sha256(content).hexdigest()
    return hmac.compare_digest(computed, signature)


def verify_token(expected: str, payload: dict) -> bool:
    """Check the verification token carried by v1 and v2 payloads."""
    header = payload.get("header")
    token = payload.get("token") or (header.get("token") if isinstance(header, dict) else None)
    return bool(token) and hmac.compare_digest(str(token), expected)
