import json
import os

os.environ["DATABASE_URL"] = "sqlite://"

import httpx
import pytest
from fastapi.testclient import TestClient

from treepay.config import Settings, get_settings
from treepay.contracts import ContractService
from treepay.database import Base, SessionLocal, engine
from treepay.deps import get_contract_service, get_retry_service, get_usdt_verifier
from treepay.guards import webhook_rate_limiter
from treepay.ledger import create_order
from treepay.main import app
from treepay.models import PaymentMethod
from treepay.retry import TreeGenerationRetryService
from treepay.usdt import TRANSFER_EVENT_TOPIC, UsdtVerifier

WORKSPACE_ID = "ws-test"
BANKING_SECRET = "bank-secret"
CHAIN_SECRET = "chain-secret"
WALLET = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
SENDER = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"
BSC_USDT = "0x55d398326f99059fF775485246999027B3197955"


class MemoryStorage:
    def __init__(self):
        self.objects = {}

    async def write(self, key, data, content_type="application/pdf"):
        self.objects[key] = data
        return f"memory://{key}"

    async def read(self, key):
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]


async def no_sleep(_delay):
    return None


def fake_pdf(html: str) -> bytes:
    return b"%PDF-1.4 " + html.encode()[:32]


def topic_for(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def make_receipt(amount_raw: int, to=WALLET, contract=BSC_USDT, status="0x1") -> dict:
    return {
        "status": status,
        "logs": [{
            "address": contract.lower(),
            "topics": [TRANSFER_EVENT_TOPIC, topic_for(SENDER), topic_for(to)],
            "data": "0x" + format(amount_raw, "064x"),
        }],
    }


def rpc_transport(receipts: dict) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        tx_hash = body["params"][0]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": receipts.get(tx_hash)})

    return httpx.MockTransport(handler)


@pytest.fixture
def settings():
    return Settings(
        app_env="test",
        default_workspace_id=WORKSPACE_ID,
        banking_webhook_secret=BANKING_SECRET,
        blockchain_webhook_secret=CHAIN_SECRET,
        company_usdt_wallet=WALLET,
        bsc_rpc_url="https://bsc.test/rpc",
        polygon_rpc_url="https://polygon.test/rpc",
    )


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def contract_service(settings, storage):
    return ContractService(settings, storage, render_pdf=fake_pdf)


@pytest.fixture
def retry_service():
    return TreeGenerationRetryService(sleep=no_sleep)


@pytest.fixture
def receipts():
    return {}


@pytest.fixture
def verifier(settings, receipts):
    return UsdtVerifier(settings, transport=rpc_transport(receipts))


@pytest.fixture
def make_order(db):
    def _make(quantity=1, payment_method=PaymentMethod.BANK_TRANSFER, **kwargs):
        kwargs.setdefault("buyer_id", "user-1")
        kwargs.setdefault("buyer_name", "Nguyen Van A")
        kwargs.setdefault("buyer_email", "buyer@example.com")
        return create_order(db, WORKSPACE_ID, quantity, payment_method, **kwargs)

    return _make


@pytest.fixture
def client(db, settings, contract_service, retry_service, verifier):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_contract_service] = lambda: contract_service
    app.dependency_overrides[get_retry_service] = lambda: retry_service
    app.dependency_overrides[get_usdt_verifier] = lambda: verifier
    webhook_rate_limiter.reset()
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        webhook_rate_limiter.reset()
