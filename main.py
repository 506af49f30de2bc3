import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

import config
import database
from auth import (
    AccountPrincipal,
    AdminPrincipal,
    account_out,
    authenticate,
    create_access_token,
    get_account,
    register_account,
    require_account,
    require_admin,
    update_account,
)
from database import (
    create_document,
    delete_document,
    get_db,
    get_document,
    get_documents,
    serialize,
    update_document,
)
from errors import AppError, NotFound
from notifications import OrderNotifier, build_notifier
from orders import OrderEngine, load_prepayment_percentage, save_prepayment_percentage
from schemas import (
    AccountUpdate,
    AuthResponse,
    LoginRequest,
    News,
    NewsCreate,
    NewsUpdate,
    OrderCreate,
    PassportUpdate,
    Product,
    ProductCreate,
    ProductUpdate,
    RegisterRequest,
    SettingsUpdate,
    StatusUpdate,
)
from uploads import save_payment_proof

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; API calls needing the database will fail")
    else:
        try:
            database.ensure_indexes(database.db)
        except Exception as e:
            logger.error("Could not ensure indexes: %s", e)
        logger.info("Connected to database %s", config.DATABASE_NAME)
    yield
    if _notifier is not None:
        _notifier.close()


app = FastAPI(title="ImportMobile API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(config.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_DIR), name="uploads")

_notifier: Optional[OrderNotifier] = None


def get_notifier() -> OrderNotifier:
    global _notifier
    if _notifier is None:
        _notifier = build_notifier()
    return _notifier


def get_engine(db=Depends(get_db), notifier: OrderNotifier = Depends(get_notifier)) -> OrderEngine:
    return OrderEngine(db, notifier, strict_transitions=config.STRICT_STATUS_TRANSITIONS)


# --- Error handling ---

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return JSONResponse(
        status_code=400,
        content={"message": "Validation failed", "error": "validation", "errors": errors},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error", "error": "internal"})


# --- Service ---

@app.get("/")
def root():
    return {"service": "ImportMobile API", "status": "ok"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": database.ping(database.db),
    }


# --- Auth ---

@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    account = register_account(db, payload)
    return {"token": create_access_token(str(account["_id"])), "user": account_out(account)}


@app.post("/api/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, db=Depends(get_db)):
    account = authenticate(db, payload.phone, payload.password)
    return {"token": create_access_token(str(account["_id"])), "user": account_out(account)}


@app.get("/api/auth/me")
def me(principal: AccountPrincipal = Depends(require_account), db=Depends(get_db)):
    return {"user": account_out(get_account(db, principal))}


@app.patch("/api/auth/me")
def update_me(payload: AccountUpdate, principal: AccountPrincipal = Depends(require_account), db=Depends(get_db)):
    return {"user": account_out(update_account(db, principal, payload))}


# --- Products ---

@app.get("/api/products")
def list_products(db=Depends(get_db)) -> List[Dict[str, Any]]:
    return serialize(get_documents(db, "product", sort=[("created_at", -1)]))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    product = get_document(db, "product", product_id)
    if product is None:
        raise NotFound("Product not found")
    return serialize(product)


@app.post("/api/products", status_code=201)
def create_product(payload: ProductCreate, admin: AdminPrincipal = Depends(require_admin), db=Depends(get_db)):
    product = create_document(db, "product", Product(**payload.model_dump()))
    logger.info("Product %s created by %s", product["_id"], admin.account_id)
    return serialize(product)


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    admin: AdminPrincipal = Depends(require_admin),
    db=Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    product = update_document(db, "product", product_id, changes) if changes else get_document(db, "product", product_id)
    if product is None:
        raise NotFound("Product not found")
    return serialize(product)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: AdminPrincipal = Depends(require_admin), db=Depends(get_db)):
    if not delete_document(db, "product", product_id):
        raise NotFound("Product not found")
    return {"message": "Product deleted"}


# --- Orders ---

@app.get("/api/orders")
def list_orders(admin: AdminPrincipal = Depends(require_admin), engine: OrderEngine = Depends(get_engine)):
    return engine.list_orders(admin)


@app.post("/api/orders", status_code=201)
def create_order(
    payload: OrderCreate,
    principal: AccountPrincipal = Depends(require_account),
    engine: OrderEngine = Depends(get_engine),
):
    return engine.create_order(principal, payload)


@app.get("/api/orders/my")
def my_orders(principal: AccountPrincipal = Depends(require_account), engine: OrderEngine = Depends(get_engine)):
    return engine.list_my_orders(principal)


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    principal: AccountPrincipal = Depends(require_account),
    engine: OrderEngine = Depends(get_engine),
):
    return engine.get_order(principal, order_id)


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    admin: AdminPrincipal = Depends(require_admin),
    engine: OrderEngine = Depends(get_engine),
):
    return engine.update_status(admin, order_id, payload.status)


@app.patch("/api/orders/{order_id}/passport")
def update_order_passport(
    order_id: str,
    payload: PassportUpdate,
    admin: AdminPrincipal = Depends(require_admin),
    engine: OrderEngine = Depends(get_engine),
):
    return engine.attach_passport_data(admin, order_id, payload.passport_data)


# --- Admin ---

@app.post("/api/admin/orders/{order_id}/request-passport")
def request_passport(
    order_id: str,
    admin: AdminPrincipal = Depends(require_admin),
    engine: OrderEngine = Depends(get_engine),
):
    order = engine.request_passport(admin, order_id)
    return {"message": "Passport data request sent", "order": order}


@app.get("/api/admin/settings")
def get_settings(admin: AdminPrincipal = Depends(require_admin), db=Depends(get_db)):
    return {"prepayment_percentage": load_prepayment_percentage(db)}


@app.put("/api/admin/settings")
def put_settings(payload: SettingsUpdate, admin: AdminPrincipal = Depends(require_admin), db=Depends(get_db)):
    percentage = save_prepayment_percentage(db, payload.prepayment_percentage)
    return {"prepayment_percentage": percentage, "message": "Settings updated"}


# --- News ---

def _with_author(db, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    author_ids = list({n["author"] for n in items if n.get("author") is not None})
    phones = {u["_id"]: u.get("phone") for u in get_documents(db, "user", {"_id": {"$in": author_ids}})}
    result = []
    for item in items:
        data = serialize(item)
        data["author"] = {"id": data.get("author"), "phone": phones.get(item.get("author"))}
        result.append(data)
    return result


@app.get("/api/news")
def list_news(db=Depends(get_db)):
    return _with_author(db, get_documents(db, "news", sort=[("created_at", -1)]))


@app.get("/api/news/{news_id}")
def get_news(news_id: str, db=Depends(get_db)):
    item = get_document(db, "news", news_id)
    if item is None:
        raise NotFound("News not found")
    return _with_author(db, [item])[0]


@app.post("/api/news", status_code=201)
def create_news(payload: NewsCreate, admin: AdminPrincipal = Depends(require_admin), db=Depends(get_db)):
    news = News(author=admin.account_id, **payload.model_dump())
    data = news.model_dump()
    data["author"] = database.to_object_id(admin.account_id)
    item = create_document(db, "news", data)
    return _with_author(db, [item])[0]


@app.put("/api/news/{news_id}")
def update_news(
    news_id: str,
    payload: NewsUpdate,
    admin: AdminPrincipal = Depends(require_admin),
    db=Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    item = update_document(db, "news", news_id, changes) if changes else get_document(db, "news", news_id)
    if item is None:
        raise NotFound("News not found")
    return _with_author(db, [item])[0]


@app.delete("/api/news/{news_id}")
def delete_news(news_id: str, admin: AdminPrincipal = Depends(require_admin), db=Depends(get_db)):
    if not delete_document(db, "news", news_id):
        raise NotFound("News not found")
    return {"message": "News deleted"}


# --- Uploads ---

@app.post("/api/upload/payment")
def upload_payment(
    screenshot: UploadFile = File(None),
    principal: AccountPrincipal = Depends(require_account),
):
    return save_payment_proof(screenshot, upload_dir=config.UPLOAD_DIR, max_bytes=config.MAX_UPLOAD_BYTES)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
