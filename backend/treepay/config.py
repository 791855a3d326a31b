import logging
import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger("config")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


class Settings(BaseModel):
    app_env: str = "production"
    database_url: str = "sqlite:///./treepay.db"
    default_workspace_id: str | None = None

    # Admission control
    enable_ip_whitelist: bool = False
    banking_webhook_allowed_ips: list[str] = []
    banking_webhook_secret: str | None = None
    blockchain_webhook_secret: str | None = None
    blockchain_webhook_provider: str = "alchemy"
    webhook_rate_limit: int = 60
    webhook_rate_window_seconds: int = 60
    trusted_proxies: list[str] = []

    # Payment rules
    banking_tolerance_percent: float = 1.0
    usdt_tolerance: float = 0.05
    usdt_match_scan_limit: int = 50
    vnd_to_usd_rate: float = 0.00004
    company_usdt_wallet: str = ""
    bsc_rpc_url: str = "https://bsc-dataseed.binance.org"
    polygon_rpc_url: str = "https://polygon-rpc.com"
    rpc_timeout_seconds: float = 10.0

    # Contract delivery
    aws_s3_bucket_name: str | None = None
    aws_region: str = "ap-southeast-1"
    contracts_local_dir: str = "./storage"
    email_host: str = "smtp.gmail.com"
    email_port: int = 587
    email_user: str | None = None
    email_pass: str | None = None
    email_from: str = '"Dai Ngan Xanh" <no-reply@dainganxanh.vn>'
    email_timeout_seconds: float = 15.0

    # Admin alerts
    bot_token: str | None = None
    admin_chat_id: str | None = None

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            app_env=os.getenv("APP_ENV", os.getenv("NODE_ENV", "production")),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./treepay.db"),
            default_workspace_id=os.getenv("DEFAULT_WORKSPACE_ID") or None,
            enable_ip_whitelist=_env_bool("ENABLE_IP_WHITELIST"),
            banking_webhook_allowed_ips=_env_list("BANKING_WEBHOOK_ALLOWED_IPS"),
            banking_webhook_secret=os.getenv("BANKING_WEBHOOK_SECRET") or None,
            blockchain_webhook_secret=os.getenv("BLOCKCHAIN_WEBHOOK_SECRET") or None,
            blockchain_webhook_provider=os.getenv("BLOCKCHAIN_WEBHOOK_PROVIDER", "alchemy"),
            webhook_rate_limit=int(os.getenv("WEBHOOK_RATE_LIMIT", "60")),
            webhook_rate_window_seconds=int(os.getenv("WEBHOOK_RATE_WINDOW", "60")),
            trusted_proxies=_env_list("TRUSTED_PROXIES"),
            banking_tolerance_percent=float(os.getenv("BANKING_TOLERANCE_PERCENT", "1")),
            usdt_tolerance=float(os.getenv("USDT_TOLERANCE", "0.05")),
            usdt_match_scan_limit=int(os.getenv("USDT_MATCH_SCAN_LIMIT", "50")),
            vnd_to_usd_rate=float(os.getenv("VND_TO_USD_RATE", "0.00004")),
            company_usdt_wallet=os.getenv("DGNX_USDT_WALLET", ""),
            bsc_rpc_url=os.getenv("BSC_RPC_URL", "https://bsc-dataseed.binance.org"),
            polygon_rpc_url=os.getenv("POLYGON_RPC_URL", "https://polygon-rpc.com"),
            rpc_timeout_seconds=float(os.getenv("RPC_TIMEOUT_SECONDS", "10")),
            aws_s3_bucket_name=os.getenv("AWS_S3_BUCKET_NAME") or None,
            aws_region=os.getenv("AWS_REGION", "ap-southeast-1"),
            contracts_local_dir=os.getenv("CONTRACTS_LOCAL_DIR", "./storage"),
            email_host=os.getenv("EMAIL_HOST", "smtp.gmail.com"),
            email_port=int(os.getenv("EMAIL_PORT", "587")),
            email_user=os.getenv("EMAIL_USER") or None,
            email_pass=os.getenv("EMAIL_PASS") or None,
            email_from=os.getenv("EMAIL_FROM", '"Dai Ngan Xanh" <no-reply@dainganxanh.vn>'),
            email_timeout_seconds=float(os.getenv("EMAIL_TIMEOUT_SECONDS", "15")),
            bot_token=os.getenv("BOT_TOKEN") or None,
            admin_chat_id=os.getenv("ADMIN_CHAT_ID") or None,
        )


@lru_cache
def get_settings() -> Settings:
    settings = Settings.from_env()
    if not settings.banking_webhook_secret:
        logger.warning("BANKING_WEBHOOK_SECRET is not set - banking webhooks will be refused")
    if not settings.blockchain_webhook_secret:
        logger.warning("BLOCKCHAIN_WEBHOOK_SECRET is not set - signature verification DISABLED")
    if not settings.enable_ip_whitelist:
        logger.warning("IP whitelist DISABLED - all IPs allowed")
    return settings
