import logging
import time
from collections import defaultdict

from fastapi import Depends, HTTPException, Request

from .config import Settings, get_settings
from .errors import ConfigurationError
from .signing import verify_signature

logger = logging.getLogger("guards")

LOCALHOST_IPS = ("127.0.0.1", "::1", "::ffff:127.0.0.1", "localhost")

PROVIDER_SIGNATURE_HEADERS = {
    "alchemy": "x-alchemy-signature",
    "moralis": "x-moralis-signature",
    "quicknode": "x-qn-signature",
}

BANKING_SIGNATURE_HEADER = "x-webhook-signature"


def get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def ip_whitelist_guard(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.enable_ip_whitelist:
        return

    client_ip = get_client_ip(request)

    if settings.is_development and client_ip in LOCALHOST_IPS:
        return

    if client_ip in set(settings.banking_webhook_allowed_ips):
        logger.info("[IP_WHITELIST] Allowed IP: %s", client_ip)
        return

    logger.warning("[IP_WHITELIST] Blocked IP: %s", client_ip)
    raise HTTPException(status_code=403, detail=f"IP {client_ip} not allowed")


def _extract_provider_signature(request: Request, provider: str) -> str | None:
    headers = list(PROVIDER_SIGNATURE_HEADERS.values())
    preferred = PROVIDER_SIGNATURE_HEADERS.get(provider)
    if preferred:
        headers.remove(preferred)
        headers.insert(0, preferred)

    for header in headers:
        value = request.headers.get(header)
        if value:
            return value
    return None


async def blockchain_signature_guard(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.blockchain_webhook_secret:
        logger.warning("Webhook signature verification SKIPPED - BLOCKCHAIN_WEBHOOK_SECRET not configured")
        return

    signature = _extract_provider_signature(request, settings.blockchain_webhook_provider)
    if not signature:
        logger.error("Missing webhook signature header")
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    raw_body = await request.body()
    if not verify_signature(raw_body, signature, settings.blockchain_webhook_secret):
        logger.error("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    logger.info("Webhook signature verified")


async def banking_signature_guard(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.banking_webhook_secret:
        logger.error("BANKING_WEBHOOK_SECRET not configured")
        raise ConfigurationError("Webhook secret not configured")

    signature = request.headers.get(BANKING_SIGNATURE_HEADER)
    if not signature:
        logger.warning("Missing banking webhook signature")
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    raw_body = await request.body()
    if not verify_signature(raw_body, signature, settings.banking_webhook_secret):
        logger.warning("Invalid banking webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")


class RateLimiter:
    """Sliding-window request counter per client address, kept in process memory."""

    def __init__(self):
        self._buckets: dict[str, list[float]] = defaultdict(list)
        self._last_sweep = time.monotonic()

    def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        now = time.monotonic()
        if now - self._last_sweep >= window_seconds:
            self._sweep(now, window_seconds)

        bucket = [t for t in self._buckets.get(key, []) if now - t < window_seconds]
        allowed = len(bucket) < limit
        if allowed:
            bucket.append(now)
        if bucket:
            self._buckets[key] = bucket
        else:
            self._buckets.pop(key, None)
        return allowed

    def _sweep(self, now: float, window_seconds: int) -> None:
        # drop callers with no request left inside the window
        for key in list(self._buckets):
            if all(now - t >= window_seconds for t in self._buckets[key]):
                del self._buckets[key]
        self._last_sweep = now

    def __len__(self) -> int:
        return len(self._buckets)

    def reset(self) -> None:
        self._buckets.clear()
        self._last_sweep = time.monotonic()


webhook_rate_limiter = RateLimiter()


def get_rate_limit_key(request: Request, settings: Settings) -> str:
    """
    The socket peer, unless the peer is a configured proxy; forwarding headers
    from anyone else are caller-controlled and ignored.
    """
    peer = request.client.host if request.client and request.client.host else "unknown"
    if peer in set(settings.trusted_proxies):
        return get_client_ip(request)
    return peer


async def webhook_rate_limit(request: Request, settings: Settings = Depends(get_settings)) -> None:
    client_ip = get_rate_limit_key(request, settings)
    if not webhook_rate_limiter.hit(client_ip, settings.webhook_rate_limit, settings.webhook_rate_window_seconds):
        logger.warning("Rate limit exceeded for %s", client_ip)
        raise HTTPException(status_code=429, detail="Too many requests")
