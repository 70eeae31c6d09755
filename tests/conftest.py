import json
import os

# Configure the environment before any campusmarket module reads settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["API_KEY"] = "test-api-key"
os.environ["MPESA_ENV"] = "sandbox"
os.environ["MPESA_CONSUMER_KEY"] = "test-consumer-key"
os.environ["MPESA_CONSUMER_SECRET"] = "test-consumer-secret"
os.environ["MPESA_SHORTCODE"] = "174379"
os.environ["MPESA_PASSKEY"] = "test-passkey"
os.environ["MPESA_CALLBACK_URL"] = "https://campusmarket.test/api/v1/payments/mpesa/callback"
os.environ["MPESA_CALLBACK_TOKEN"] = "test-callback-token"

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import campusmarket.models  # noqa: F401
from campusmarket.api.deps import get_mpesa_client
from campusmarket.core.database import Base, get_db
from campusmarket.main import app
from campusmarket.models.enums import ListingType
from campusmarket.models.listing import Listing
from campusmarket.models.seller_profile import SellerProfile
from campusmarket.models.wallet import Wallet
from campusmarket.services.escrow import EscrowService
from campusmarket.services.events import WILDCARD, EventBus
from campusmarket.services.mpesa_client import MpesaDarajaClient
from campusmarket.services.profiles import create_profile

API_KEY = "test-api-key"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class EventRecorder:
    """Collects every published event."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def names(self):
        return [e.name for e in self.events]


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def bus(recorder):
    bus = EventBus()
    bus.subscribe(WILDCARD, recorder)
    return bus


@pytest.fixture
def escrow(db, bus):
    return EscrowService(db, bus)


# ─── Factories ──────────────────────────────────────────────────────

@pytest.fixture
def make_profile(db):
    counter = {"n": 0}

    def _make(name="user", is_admin=False):
        counter["n"] += 1
        return create_profile(
            db,
            email=f"{name}{counter['n']}@campusmarket.test",
            full_name=name.title(),
            is_admin=is_admin,
        )
    return _make


@pytest.fixture
def seller(make_profile):
    return make_profile("seller")


@pytest.fixture
def buyer(make_profile):
    return make_profile("buyer")


@pytest.fixture
def admin(make_profile):
    return make_profile("admin", is_admin=True)


@pytest.fixture
def make_listing(db):
    def _make(seller_id, title="Used scientific calculator", listing_type=ListingType.ITEM, price="1000"):
        listing = Listing(listing_type=listing_type, title=title, seller_id=seller_id, price=Decimal(price))
        db.add(listing)
        db.commit()
        return listing
    return _make


@pytest.fixture
def listing(make_listing, seller):
    return make_listing(seller.id)


@pytest.fixture
def pending_txn(escrow, buyer, seller, listing):
    return escrow.create_transaction(buyer.id, seller.id, listing.id, "item", 1000)


@pytest.fixture
def paid_txn(escrow, pending_txn):
    escrow.confirm_escrow_payment(pending_txn.id, "QK12ABC345", "ws_CO_paid")
    return pending_txn


@pytest.fixture
def wallet_of(db):
    """Fresh read of a user's wallet, bypassing the identity map."""
    def _read(user_id):
        db.expire_all()
        return db.scalars(select(Wallet).where(Wallet.user_id == user_id)).first()
    return _read


@pytest.fixture
def seller_profile_of(db):
    def _read(user_id):
        db.expire_all()
        return db.scalars(select(SellerProfile).where(SellerProfile.user_id == user_id)).first()
    return _read


# ─── M-Pesa sandbox double ──────────────────────────────────────────

class FakeDaraja:
    """Stands in for Safaricom's Daraja API behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.token_status = 200
        self.stk_status = 200
        self.stk_response = None
        self.counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="Invalid credentials")
            return httpx.Response(200, json={"access_token": "sandbox-token", "expires_in": "3599"})

        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            if self.stk_response is not None:
                return httpx.Response(self.stk_status, json=self.stk_response)
            self.counter += 1
            return httpx.Response(200, json={
                "MerchantRequestID": f"29115-34620561-{self.counter}",
                "CheckoutRequestID": f"ws_CO_19102026_{self.counter:04d}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })
        return httpx.Response(404)

    def stk_payloads(self):
        return [
            json.loads(r.content) for r in self.requests
            if r.url.path == "/mpesa/stkpush/v1/processrequest"
        ]


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
def mpesa_client(daraja):
    return MpesaDarajaClient(transport=httpx.MockTransport(daraja))


def _stk_callback(checkout_request_id, amount=1000, receipt="QK12ABC345", result_code=0, phone=254712345678):
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20261019102115},
            {"Name": "PhoneNumber", "Value": phone},
        ]}
    return {"Body": {"stkCallback": stk}}


@pytest.fixture
def stk_callback():
    """Builder for Safaricom STK result callback bodies."""
    return _stk_callback


# ─── HTTP client ────────────────────────────────────────────────────

@pytest.fixture
def client(session_factory, mpesa_client):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    # No context manager: the lifespan (init_db, seeding, scheduler) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    """Headers authenticating as the given profile."""
    def _headers(user):
        return {"X-API-Key": API_KEY, "X-User-Id": user.id}
    return _headers
