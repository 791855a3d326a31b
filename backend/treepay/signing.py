import hashlib
import hmac


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def normalize_signature(signature: str) -> str:
    signature = (signature or "").strip().lower()
    if signature.startswith("0x"):
        signature = signature[2:]
    return signature


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """
    HMAC-SHA256 check of a webhook body against the signature sent by the provider.
    Accepts hex with or without a 0x prefix, compares in constant time.
    """
    if not signature or not secret:
        return False
    computed = compute_signature(raw_body, secret)
    return hmac.compare_digest(computed.encode(), normalize_signature(signature).encode())
