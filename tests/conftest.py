import mongomock
from bson import ObjectId
import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import main
import uploads
from database import create_document, get_db
from schemas import Listing, SellerContact

ADMIN_EMAIL = "admin@bookbazaar.in"


@pytest.fixture
def db():
    return mongomock.MongoClient()["bookbazaar"]


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(uploads, "UPLOAD_DIR", tmp_path)
    return tmp_path


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(main, "ADMIN_EMAILS", {ADMIN_EMAIL})
    monkeypatch.setattr(main, "password_ctx", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))
    main.app.dependency_overrides[get_db] = lambda: db
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def register(client, username, email=None, password="secret123"):
    resp = client.post("/auth/register", json={
        "username": username,
        "email": email or f"{username}@gmail.com",
        "password": password,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


def auth(session):
    return {"Authorization": f"Bearer {session['token']}"}


@pytest.fixture
def seller(client):
    return register(client, "seller_one")


@pytest.fixture
def buyer(client):
    return register(client, "buyer_one")


@pytest.fixture
def admin(client):
    return register(client, "site_admin", ADMIN_EMAIL)


@pytest.fixture
def make_listing(db):
    def _make(title="The Great Gatsby", author="F. Scott Fitzgerald", price=100, quantity=5,
              seller_id="64b000000000000000000001", **extra):
        listing = Listing(
            title=title,
            author=author,
            description="A well kept copy with minor shelf wear.",
            condition=extra.pop("condition", "good"),
            price=price,
            category=extra.pop("category", "fiction"),
            city=extra.pop("city", "Mumbai"),
            quantity=quantity,
            seller_id=seller_id,
            seller_contact=SellerContact(phone="9876543210", email="seller@gmail.com"),
            upi_id="seller@upi",
            **extra,
        )
        return create_document(db, "listing", listing)
    return _make


def stock_of(db, listing_id):
    return db["listing"].find_one({"_id": ObjectId(listing_id)})["quantity"]
