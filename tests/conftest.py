import os
import sys
import tempfile

# configure before the app modules read the environment
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="importmobile-uploads-"))
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token, hash_password, principal_for
from database import create_document, ensure_indexes, get_db
from notifications import OrderNotifier
from orders import OrderEngine


class FakeBot:
    """Records what would have been sent to Telegram."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []
        self.photos = []

    def send_message(self, chat_id, text):
        if self.fail:
            raise RuntimeError("telegram is down")
        self.messages.append((chat_id, text))
        return {"message_id": len(self.messages)}

    def send_photo(self, chat_id, photo, caption=None):
        if self.fail:
            raise RuntimeError("telegram is down")
        self.photos.append((chat_id, photo, caption))
        return {"message_id": len(self.photos)}

    def close(self):
        self.closed = True


ADMIN_CHAT = "admin-chat"


@pytest.fixture
def db():
    database_ = mongomock.MongoClient(tz_aware=True)["importmobile_test"]
    ensure_indexes(database_)
    return database_


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def notifier(bot):
    return OrderNotifier(bot, admin_chat_id=ADMIN_CHAT, upload_dir=os.environ["UPLOAD_DIR"])


@pytest.fixture
def engine(db, notifier):
    return OrderEngine(db, notifier)


def _account(db, phone, is_admin=False, telegram_id=None):
    return create_document(db, "user", {
        "phone": phone,
        "password": hash_password("secret123"),
        "telegram_id": telegram_id,
        "telegram_username": None,
        "is_admin": is_admin,
    })


@pytest.fixture
def customer(db):
    return _account(db, "+998901111111", telegram_id="555")


@pytest.fixture
def other_customer(db):
    return _account(db, "+998902222222")


@pytest.fixture
def admin(db):
    return _account(db, "+998903333333", is_admin=True, telegram_id="999")


@pytest.fixture
def customer_principal(customer):
    return principal_for(customer)


@pytest.fixture
def admin_principal(admin):
    return principal_for(admin)


def _product(db, name, price, in_stock=True):
    return create_document(db, "product", {
        "name": name,
        "description": f"{name} description",
        "price": price,
        "image": None,
        "in_stock": in_stock,
    })


@pytest.fixture
def phone_product(db):
    return _product(db, "iPhone 15", 100000)


@pytest.fixture
def case_product(db):
    return _product(db, "Case", 50000)


@pytest.fixture
def sold_out_product(db):
    return _product(db, "Pixel 8", 80000, in_stock=False)


@pytest.fixture
def client(db, notifier):
    import main

    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def auth_header(account):
    return {"Authorization": f"Bearer {create_access_token(str(account['_id']))}"}


@pytest.fixture
def customer_headers(customer):
    return auth_header(customer)


@pytest.fixture
def other_headers(other_customer):
    return auth_header(other_customer)


@pytest.fixture
def admin_headers(admin):
    return auth_header(admin)
