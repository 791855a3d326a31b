import json

from starlette.requests import Request

from treepay.banking import verify_webhook_signature
from treepay.guards import RateLimiter, get_rate_limit_key, webhook_rate_limiter
from treepay.signing import compute_signature, normalize_signature, verify_signature

from conftest import BANKING_SECRET, CHAIN_SECRET

BODY = b'{"transactionId":"FT1","amount":260000,"content":"Thanh toan DGX-20260101-ABCDE"}'


def test_verify_signature_accepts_matching_hmac():
    signature = compute_signature(BODY, "secret")
    assert verify_signature(BODY, signature, "secret")


def test_verify_signature_accepts_prefixed_and_uppercase_hex():
    signature = compute_signature(BODY, "secret")
    assert verify_signature(BODY, "0x" + signature, "secret")
    assert verify_signature(BODY, signature.upper(), "secret")
    assert normalize_signature(" 0xABC ") == "abc"


def test_verify_signature_rejects_tampered_body_or_wrong_secret():
    signature = compute_signature(BODY, "secret")
    assert not verify_signature(BODY + b" ", signature, "secret")
    assert not verify_signature(BODY, signature, "other")
    assert not verify_webhook_signature(BODY, "deadbeef", "secret")


def test_verify_signature_rejects_empty_inputs():
    assert not verify_signature(BODY, "", "secret")
    assert not verify_signature(BODY, compute_signature(BODY, "secret"), "")


def test_rate_limiter_window():
    limiter = RateLimiter()
    assert limiter.hit("1.2.3.4", 2, 60)
    assert limiter.hit("1.2.3.4", 2, 60)
    assert not limiter.hit("1.2.3.4", 2, 60)
    assert limiter.hit("5.6.7.8", 2, 60)
    limiter.reset()
    assert limiter.hit("1.2.3.4", 2, 60)


def _post_banking(client, body: bytes, headers: dict):
    return client.post("/webhooks/banking", content=body, headers={"content-type": "application/json", **headers})


def test_banking_webhook_requires_signature(client):
    r = _post_banking(client, BODY, {})
    assert r.status_code == 401


def test_banking_webhook_rejects_invalid_signature(client):
    r = _post_banking(client, BODY, {"x-webhook-signature": compute_signature(BODY, "wrong")})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid signature"


def test_banking_webhook_refused_without_secret(client, settings):
    settings.banking_webhook_secret = None
    r = _post_banking(client, BODY, {"x-webhook-signature": compute_signature(BODY, BANKING_SECRET)})
    assert r.status_code == 500
    assert r.json()["message"] == "Webhook secret not configured"


def test_ip_whitelist_blocks_unknown_caller(client, settings):
    settings.enable_ip_whitelist = True
    settings.banking_webhook_allowed_ips = ["10.0.0.1"]
    headers = {"x-webhook-signature": compute_signature(BODY, BANKING_SECRET)}

    r = _post_banking(client, BODY, {**headers, "x-forwarded-for": "10.9.9.9"})
    assert r.status_code == 403
    assert r.json()["detail"] == "IP 10.9.9.9 not allowed"

    r = _post_banking(client, BODY, {**headers, "x-forwarded-for": "10.0.0.1, 172.16.0.1"})
    assert r.status_code == 200


def test_ip_whitelist_localhost_bypass_in_development(client, settings):
    settings.enable_ip_whitelist = True
    settings.app_env = "development"
    headers = {"x-webhook-signature": compute_signature(BODY, BANKING_SECRET), "x-real-ip": "127.0.0.1"}
    assert _post_banking(client, BODY, headers).status_code == 200


def test_blockchain_webhook_signature_headers(client):
    body = json.dumps({}).encode()
    r = client.post("/webhooks/blockchain", content=body)
    assert r.status_code == 401
    assert r.json()["detail"] == "Missing webhook signature"

    r = client.post("/webhooks/blockchain", content=body, headers={"x-alchemy-signature": "00"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid webhook signature"

    r = client.post(
        "/webhooks/blockchain", content=body, headers={"x-moralis-signature": compute_signature(body, CHAIN_SECRET)}
    )
    assert r.status_code == 200


def test_blockchain_webhook_without_secret_skips_verification(client, settings):
    settings.blockchain_webhook_secret = None
    r = client.post("/webhooks/blockchain", content=b"{}")
    assert r.status_code == 200
    assert r.json()["success"] is False


def test_blockchain_webhook_rate_limited(client, settings):
    settings.blockchain_webhook_secret = None
    settings.webhook_rate_limit = 2
    assert client.post("/webhooks/blockchain", content=b"{}").status_code == 200
    assert client.post("/webhooks/blockchain", content=b"{}").status_code == 200
    assert client.post("/webhooks/blockchain", content=b"{}").status_code == 429


def _request(peer: str, headers: dict | None = None) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": raw_headers, "client": (peer, 4000)})


def test_rate_limit_key_ignores_forwarding_headers_from_untrusted_peer(settings):
    request = _request("198.51.100.1", {"x-forwarded-for": "203.0.113.7", "x-real-ip": "203.0.113.8"})
    assert get_rate_limit_key(request, settings) == "198.51.100.1"

    settings.trusted_proxies = ["198.51.100.1"]
    assert get_rate_limit_key(request, settings) == "203.0.113.7"


def test_rotating_forwarded_for_does_not_bypass_rate_limit(client, settings):
    settings.blockchain_webhook_secret = None
    settings.webhook_rate_limit = 2
    statuses = [
        client.post("/webhooks/blockchain", content=b"{}", headers={"x-forwarded-for": f"10.0.0.{i}"}).status_code
        for i in range(5)
    ]
    assert statuses == [200, 200, 429, 429, 429]
    assert len(webhook_rate_limiter) == 1


def test_rate_limiter_drops_idle_callers(monkeypatch):
    clock = {"now": 1000.0}
    monkeypatch.setattr("treepay.guards.time.monotonic", lambda: clock["now"])
    limiter = RateLimiter()

    for i in range(50):
        limiter.hit(f"10.0.0.{i}", 5, 60)
    assert len(limiter) == 50

    clock["now"] += 61
    assert limiter.hit("10.0.0.200", 5, 60)
    assert len(limiter) == 1
