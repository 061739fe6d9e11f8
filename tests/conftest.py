import os

os.environ.pop("DATABASE_URL", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("ADMIN_EMAIL", None)
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_token, hash_password
from database import create_document, get_db, to_object_id, utcnow
from errors import ValidationFailed
from gateways import PaymentInitiation, ProviderStatus, get_gateways
from schemas import Product, SellerProfile, User

PASSWORD = "Secret123"
ADDRESS = {"full_name": "Aline Uwase", "phone": "250788000111", "city": "Kigali", "address_line": "KN 5 Rd"}


class FakeGateway:
    """Stands in for a payment provider; tests flip .paid to simulate a confirmed payment."""

    def __init__(self, method, reference_field):
        self.method = method
        self.reference_field = reference_field
        self.paid = False
        self.status = "pending"
        self.initiated = []
        self.verified = []

    def initiate(self, order, phone=None, email=None):
        if self.method == "momo" and not phone:
            raise ValidationFailed("Phone number is required for MoMo payments")
        reference = f"{self.method}-ref-{len(self.initiated) + 1}"
        self.initiated.append((str(order["_id"]), reference))
        client_secret = f"{reference}_secret" if self.method == "stripe" else None
        return PaymentInitiation(transaction_reference=reference, provider_state="pending",
                                 client_secret=client_secret)

    def verify(self, reference):
        self.verified.append(reference)
        if self.paid:
            return ProviderStatus(paid=True, status="successful" if self.method == "momo" else "succeeded")
        return ProviderStatus(paid=False, status=self.status)


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    database["user"].create_index("email", unique=True)
    database["sellerprofile"].create_index("user_id", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["review"].create_index([("product_id", 1), ("user_id", 1)], unique=True)
    return database


@pytest.fixture
def gateways():
    return {
        "momo": FakeGateway("momo", "momo_transaction_id"),
        "stripe": FakeGateway("stripe", "stripe_payment_id"),
    }


@pytest.fixture
def client(db, gateways):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_gateways] = lambda: gateways
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def make_user(db, email="buyer@kuisoko.rw", role="customer", name="Aline Uwase", **fields):
    fields.setdefault("is_verified", True)
    user = User(name=name, email=email, password_hash=hash_password(PASSWORD), role=role, **fields)
    uid = create_document(db, "user", user)
    return db["user"].find_one({"_id": to_object_id(uid)})


def make_seller(db, email="seller@kuisoko.rw", status="active", name="Jean Bosco"):
    role = "seller" if status == "active" else "customer"
    user = make_user(db, email=email, role=role, name=name, role_changed_at=utcnow())
    create_document(db, "sellerprofile", SellerProfile(
        user_id=str(user["_id"]), store_name=f"{name}'s Store", seller_status=status,
        status_changed_at=user["role_changed_at"],
    ))
    return user


def make_product(db, seller, name="Imigongo Canvas", price=1000, stock=5, category="art"):
    pid = create_document(db, "product", Product(
        name=name, description="Handmade in Rwanda, natural pigments.", price=price, stock=stock,
        category=category, image_url="https://img.kuisoko.rw/p.jpg", seller_id=str(seller["_id"]),
    ))
    return db["product"].find_one({"_id": to_object_id(pid)})


def auth_header(user):
    return {"Authorization": f"Bearer {create_token(str(user['_id']), user['role'])}"}


@pytest.fixture
def customer(db):
    return make_user(db)


@pytest.fixture
def seller(db):
    return make_seller(db)


@pytest.fixture
def admin(db):
    return make_user(db, email="admin@kuisoko.rw", role="admin", name="Admin")
