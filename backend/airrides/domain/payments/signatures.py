import hashlib
import hmac


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _matches(expected: str, signature: str) -> bool:
    # compare_digest rejects non-ASCII str, so compare encoded bytes.
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode("utf-8", "replace"))


def client_signature(secret: str, order_id: str, payment_id: str) -> str:
    return _hmac_hex(secret, f"{order_id}|{payment_id}".encode())


def webhook_signature(secret: str, raw_body: bytes) -> str:
    return _hmac_hex(secret, raw_body)


def verify_client_signature(secret: str | None, order_id: str, payment_id: str, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    expected = client_signature(secret, order_id, payment_id)
    return _matches(expected, signature)


def verify_webhook_signature(secret: str | None, raw_body: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    expected = webhook_signature(secret, raw_body)
    return _matches(expected, signature)
