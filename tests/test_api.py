import io

from database import get_document


def order_body(*lines, **extra):
    body = {
        "items": [{"product_id": str(p["_id"]), "quantity": q} for p, q in lines],
        "delivery_address": "Tashkent, Yunusobod 4",
        "contact_phone": "+998901111111",
    }
    body.update(extra)
    return body


# --- service ---

def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "timestamp" in response.json()


def test_lifespan_closes_notifier(monkeypatch, notifier, bot):
    import main
    from fastapi.testclient import TestClient

    monkeypatch.setattr(main, "_notifier", notifier)
    with TestClient(main.app) as c:
        assert c.get("/").status_code == 200
        assert not getattr(bot, "closed", False)
    assert bot.closed is True


# --- auth ---

def test_register_and_me(client):
    response = client.post("/api/auth/register", json={"phone": "+998 90 123 45 67", "password": "secret"})
    assert response.status_code == 201
    data = response.json()
    assert data["user"]["phone"] == "+998901234567"
    assert data["user"]["is_admin"] is False

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
    assert me.status_code == 200
    assert me.json()["user"]["id"] == data["user"]["id"]


def test_register_duplicate_phone(client, db):
    body = {"phone": "+998901234567", "password": "secret"}
    assert client.post("/api/auth/register", json=body).status_code == 201
    response = client.post("/api/auth/register", json=body)
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"
    assert db["user"].count_documents({"phone": "+998901234567"}) == 1


def test_register_validation_errors(client):
    response = client.post("/api/auth/register", json={"phone": "abc", "password": "123"})
    assert response.status_code == 400
    fields = {e["field"] for e in response.json()["errors"]}
    assert fields == {"phone", "password"}


def test_login(client, customer):
    response = client.post("/api/auth/login", json={"phone": "+998901111111", "password": "secret123"})
    assert response.status_code == 200
    assert response.json()["user"]["id"] == str(customer["_id"])


def test_login_wrong_password(client, customer):
    response = client.post("/api/auth/login", json={"phone": "+998901111111", "password": "nope!"})
    assert response.status_code == 401


def test_me_without_token(client):
    response = client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.json()["message"] == "Token not provided"


def test_me_with_bad_token(client):
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token"


def test_link_telegram(client, other_customer, other_headers):
    response = client.patch("/api/auth/me", json={"telegram_id": "777", "telegram_username": "buyer"}, headers=other_headers)
    assert response.status_code == 200
    assert response.json()["user"]["telegram_id"] == "777"


def test_numeric_telegram_id(client, db, other_headers):
    response = client.post(
        "/api/auth/register",
        json={"phone": "+998905555555", "password": "secret", "telegram_id": 123456789},
    )
    assert response.status_code == 201
    assert response.json()["user"]["telegram_id"] == "123456789"
    assert db["user"].find_one({"phone": "+998905555555"})["telegram_id"] == "123456789"

    linked = client.patch("/api/auth/me", json={"telegram_id": 987654321}, headers=other_headers)
    assert linked.status_code == 200
    assert linked.json()["user"]["telegram_id"] == "987654321"


# --- products ---

def test_products_public_read(client, phone_product):
    response = client.get("/api/products")
    assert response.status_code == 200
    assert [p["name"] for p in response.json()] == ["iPhone 15"]

    one = client.get(f"/api/products/{phone_product['_id']}")
    assert one.status_code == 200
    assert one.json()["price"] == 100000


def test_product_not_found(client):
    assert client.get("/api/products/65a000000000000000000000").status_code == 404
    assert client.get("/api/products/bad-id").status_code == 404


def test_product_crud_as_admin(client, admin_headers):
    created = client.post(
        "/api/products",
        json={"name": "Galaxy S24", "description": "256GB", "price": 90000},
        headers=admin_headers,
    )
    assert created.status_code == 201
    product_id = created.json()["id"]
    assert created.json()["in_stock"] is True

    updated = client.put(f"/api/products/{product_id}", json={"in_stock": False}, headers=admin_headers)
    assert updated.status_code == 200
    assert updated.json()["in_stock"] is False
    assert updated.json()["name"] == "Galaxy S24"

    deleted = client.delete(f"/api/products/{product_id}", headers=admin_headers)
    assert deleted.status_code == 200
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_product_create_requires_admin(client, customer_headers):
    response = client.post(
        "/api/products",
        json={"name": "Galaxy S24", "description": "256GB", "price": 90000},
        headers=customer_headers,
    )
    assert response.status_code == 403


def test_product_negative_price(client, admin_headers):
    response = client.post(
        "/api/products",
        json={"name": "Galaxy S24", "description": "256GB", "price": -1},
        headers=admin_headers,
    )
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "price"


# --- orders ---

def test_create_order(client, customer_headers, phone_product, case_product, bot):
    response = client.post(
        "/api/orders",
        json=order_body((phone_product, 2), (case_product, 1), prepayment_percentage=50),
        headers=customer_headers,
    )
    assert response.status_code == 201
    data = response.json()
    assert data["total_amount"] == 250000
    assert data["prepayment_amount"] == 125000
    assert data["status"] == "pending_payment"
    assert bot.messages[0][0] == "admin-chat"


def test_create_order_requires_token(client, phone_product):
    response = client.post("/api/orders", json=order_body((phone_product, 1)))
    assert response.status_code == 401


def test_create_order_out_of_stock(client, db, customer_headers, sold_out_product):
    response = client.post("/api/orders", json=order_body((sold_out_product, 1)), headers=customer_headers)
    assert response.status_code == 409
    assert db["order"].count_documents({}) == 0


def test_create_order_validation(client, customer_headers):
    response = client.post(
        "/api/orders",
        json={"items": [], "delivery_address": "", "contact_phone": "x", "prepayment_percentage": 150},
        headers=customer_headers,
    )
    assert response.status_code == 400
    fields = {e["field"] for e in response.json()["errors"]}
    assert {"items", "delivery_address", "prepayment_percentage"} <= fields


def test_create_order_bad_quantity(client, customer_headers, phone_product):
    body = order_body((phone_product, 0))
    response = client.post("/api/orders", json=body, headers=customer_headers)
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "items.0.quantity"


def _place(client, headers, product):
    response = client.post("/api/orders", json=order_body((product, 1)), headers=headers)
    assert response.status_code == 201
    return response.json()


def test_order_read_access(client, customer_headers, other_headers, admin_headers, phone_product):
    order = _place(client, customer_headers, phone_product)

    own = client.get(f"/api/orders/{order['id']}", headers=customer_headers)
    assert own.status_code == 200
    assert own.json()["user_phone"] == "+998901111111"
    assert own.json()["items"][0]["product"]["name"] == "iPhone 15"
    assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200
    forbidden = client.get(f"/api/orders/{order['id']}", headers=other_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "forbidden"


def test_my_orders_and_admin_list(client, customer_headers, other_headers, admin_headers, phone_product):
    order = _place(client, customer_headers, phone_product)

    mine = client.get("/api/orders/my", headers=customer_headers)
    assert [o["id"] for o in mine.json()] == [order["id"]]
    assert mine.json()[0]["items"][0]["product"]["name"] == "iPhone 15"
    assert client.get("/api/orders/my", headers=other_headers).json() == []

    assert client.get("/api/orders", headers=customer_headers).status_code == 403
    everything = client.get("/api/orders", headers=admin_headers)
    assert everything.status_code == 200
    assert everything.json()[0]["user_phone"] == "+998901111111"


def test_status_flow_over_http(client, db, customer_headers, admin_headers, phone_product, bot):
    order = _place(client, customer_headers, phone_product)
    bot.messages.clear()

    early = client.post(f"/api/admin/orders/{order['id']}/request-passport", headers=admin_headers)
    assert early.status_code == 409

    verified = client.patch(f"/api/orders/{order['id']}/status", json={"status": "payment_verified"}, headers=admin_headers)
    assert verified.status_code == 200
    assert verified.json()["status"] == "payment_verified"

    requested = client.post(f"/api/admin/orders/{order['id']}/request-passport", headers=admin_headers)
    assert requested.status_code == 200
    assert requested.json()["order"]["status"] == "passport_requested"

    passport = client.patch(f"/api/orders/{order['id']}/passport", json={"passport_data": "AA 1234567"}, headers=admin_headers)
    assert passport.status_code == 200
    assert passport.json()["status"] == "passport_verified"

    confirmed = client.patch(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=admin_headers)
    assert confirmed.json()["status"] == "confirmed"

    # payment_verified, passport request, confirmed
    assert [chat for chat, _ in bot.messages] == ["555", "555", "555"]
    assert get_document(db, "order", order["id"])["prepayment_amount"] == 50000


def test_status_update_invalid_value(client, customer_headers, admin_headers, phone_product):
    order = _place(client, customer_headers, phone_product)
    response = client.patch(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "status"


def test_status_update_unknown_order(client, admin_headers):
    response = client.patch("/api/orders/65a000000000000000000000/status", json={"status": "confirmed"}, headers=admin_headers)
    assert response.status_code == 404


def test_status_update_requires_admin(client, customer_headers, phone_product):
    order = _place(client, customer_headers, phone_product)
    response = client.patch(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=customer_headers)
    assert response.status_code == 403


def test_passport_requires_data(client, customer_headers, admin_headers, phone_product):
    order = _place(client, customer_headers, phone_product)
    response = client.patch(f"/api/orders/{order['id']}/passport", json={"passport_data": "   "}, headers=admin_headers)
    assert response.status_code == 400


# --- settings ---

def test_settings(client, admin_headers, customer_headers, phone_product):
    assert client.get("/api/admin/settings", headers=admin_headers).json() == {"prepayment_percentage": 50}

    updated = client.put("/api/admin/settings", json={"prepayment_percentage": 20}, headers=admin_headers)
    assert updated.status_code == 200
    assert updated.json()["prepayment_percentage"] == 20

    order = _place(client, customer_headers, phone_product)
    assert order["prepayment_amount"] == 20000

    assert client.put("/api/admin/settings", json={"prepayment_percentage": 101}, headers=admin_headers).status_code == 400
    assert client.get("/api/admin/settings", headers=customer_headers).status_code == 403


# --- news ---

def test_news_crud(client, admin_headers, customer_headers):
    created = client.post("/api/news", json={"title": "New arrivals", "content": "iPhone 16 in stock"}, headers=admin_headers)
    assert created.status_code == 201
    news_id = created.json()["id"]
    assert created.json()["author"]["phone"] == "+998903333333"

    listing = client.get("/api/news")
    assert [n["title"] for n in listing.json()] == ["New arrivals"]

    updated = client.put(f"/api/news/{news_id}", json={"title": "Arrivals"}, headers=admin_headers)
    assert updated.json()["title"] == "Arrivals"
    assert updated.json()["content"] == "iPhone 16 in stock"

    assert client.delete(f"/api/news/{news_id}", headers=customer_headers).status_code == 403
    assert client.delete(f"/api/news/{news_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/news/{news_id}").status_code == 404


def test_news_requires_title(client, admin_headers):
    response = client.post("/api/news", json={"title": " ", "content": "x"}, headers=admin_headers)
    assert response.status_code == 400


# --- uploads ---

def test_upload_payment(client, customer_headers):
    files = {"screenshot": ("proof.png", io.BytesIO(b"\x89PNG fake image"), "image/png")}
    response = client.post("/api/upload/payment", files=files, headers=customer_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["url"] == f"/uploads/{data['filename']}"
    assert data["filename"].endswith(".png")

    served = client.get(data["url"])
    assert served.status_code == 200
    assert served.content == b"\x89PNG fake image"


def test_upload_rejects_non_image(client, customer_headers):
    files = {"screenshot": ("notes.txt", io.BytesIO(b"hello"), "text/plain")}
    response = client.post("/api/upload/payment", files=files, headers=customer_headers)
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "screenshot"


def test_upload_missing_file(client, customer_headers):
    response = client.post("/api/upload/payment", headers=customer_headers)
    assert response.status_code == 400


def test_upload_requires_token(client):
    files = {"screenshot": ("proof.png", io.BytesIO(b"data"), "image/png")}
    assert client.post("/api/upload/payment", files=files).status_code == 401
