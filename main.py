import logging
import math
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Depends, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import orders
import payments
import reviews
from database import collection, create_document, get_documents, serialize
from errors import (
    AddressNotFoundError,
    DatabaseUnavailableError,
    DuplicateReviewError,
    EmptyCartError,
    InsufficientStockError,
    InvalidCouponError,
    InvalidPaymentStatusError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    PaymentNotFoundError,
    PermissionDeniedError,
    RateLimitExceededError,
    ReviewNotFoundError,
    ShopError,
)
from ratelimit import RateLimiter
from schemas import Address, CartItem, Category, Coupon, DiscountType, OrderStatus, PaymentMethod, Product, User

# Environment / Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
ENVIRONMENT = os.getenv("ENVIRONMENT", "production")
API_VERSION = os.getenv("API_VERSION", "1.0.0")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")]

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

login_limiter = RateLimiter(
    "auth", max_requests=10, window_seconds=15 * 60,
    message="Too many login attempts. Try again in 15 minutes.",
)
order_limiter = RateLimiter("orders", max_requests=30, window_seconds=15 * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes()
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; every data route will answer 503")
    yield


app = FastAPI(title="Sufficius API", version=API_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error envelope
ERROR_STATUS_CODES = {
    EmptyCartError: 400,
    AddressNotFoundError: 400,
    InsufficientStockError: 400,
    InvalidCouponError: 400,
    InvalidStatusTransitionError: 400,
    InvalidPaymentStatusError: 400,
    DuplicateReviewError: 400,
    PermissionDeniedError: 403,
    OrderNotFoundError: 404,
    PaymentNotFoundError: 404,
    ReviewNotFoundError: 404,
    RateLimitExceededError: 429,
    DatabaseUnavailableError: 503,
}


def error_response(status_code: int, message, error_type: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error_type": error_type},
        headers=headers,
    )


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to appropriate HTTP responses."""
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    return error_response(ERROR_STATUS_CODES.get(type(exc), 500), str(exc), type(exc).__name__, headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, exc.detail, "HTTPException", getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"] if part != "body")
        problems.append(f"{field}: {err['msg']}" if field else err["msg"])
    return error_response(400, "; ".join(problems), "ValidationError")


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = str(exc) if ENVIRONMENT == "development" else "Internal server error"
    return error_response(500, message, "InternalError")


# Utility functions
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=6)


class UserOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    role: str


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


async def get_current_user(token: str = Depends(oauth2_scheme)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    if not ObjectId.is_valid(user_id):
        raise credentials_exception
    user = collection("user").find_one({"_id": ObjectId(user_id)})
    if not user:
        raise credentials_exception
    return user


# Admin guard
def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return user


def user_id_of(user) -> str:
    return str(user["_id"])


def is_admin(user) -> bool:
    return user.get("role") == "admin"


def parse_id(value: str, not_found: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=404, detail=not_found)
    return ObjectId(value)


def paginate(collection_name: str, filt: dict, page: int, limit: int):
    total = collection(collection_name).count_documents(filt)
    cursor = (
        collection(collection_name)
        .find(filt)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "success": True,
        "data": [serialize(doc) for doc in cursor],
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit),
    }


# Routes
@app.get("/")
def root():
    return {
        "message": "Sufficius API is running",
        "version": API_VERSION,
        "environment": ENVIRONMENT,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
def health():
    response = {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": ENVIRONMENT,
        "version": API_VERSION,
        "database": "not configured",
        "collections": [],
    }

    if database.db is None:
        response["status"] = "degraded"
        return response

    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "connected"
    except PyMongoError as e:
        response["status"] = "degraded"
        response["database"] = f"error: {str(e)[:50]}"

    return response


# Auth endpoints
@app.post("/auth/register", response_model=UserOut, status_code=201)
def register(payload: UserCreate):
    # check existing
    if collection("user").find_one({"$or": [{"username": payload.username}, {"email": payload.email}]}):
        raise HTTPException(status_code=400, detail="Username or email already exists")

    uid = create_document("user", User(
        username=payload.username,
        email=payload.email,
        password_hash=get_password_hash(payload.password),
    ))
    logger.info("User %s registered", uid)
    return {"id": uid, "username": payload.username, "email": payload.email, "role": "customer"}


@app.post("/auth/login", response_model=Token, dependencies=[Depends(login_limiter)])
def login(form_data: OAuth2PasswordRequestForm = Depends()):
    user = collection("user").find_one({"username": form_data.username})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect username or password")

    access_token = create_access_token({"sub": str(user["_id"])})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/auth/me", response_model=UserOut)
def me(user=Depends(get_current_user)):
    return {"id": user_id_of(user), "username": user["username"], "email": user["email"], "role": user["role"]}


# Product and category models
class ProductUpdate(BaseModel):
    name: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    specs: Optional[dict] = None


# Category endpoints
@app.post("/categorias", dependencies=[Depends(require_admin)], status_code=201)
def create_category(payload: Category):
    if collection("category").find_one({"$or": [{"slug": payload.slug}, {"name": payload.name}]}):
        raise HTTPException(status_code=400, detail="Category exists")
    cid = create_document("category", payload)
    return {"success": True, "data": {"id": cid, **payload.model_dump()}}


@app.get("/categorias")
def list_categories():
    return {"success": True, "data": [serialize(c) for c in get_documents("category")]}


# Product endpoints
@app.post("/produtos", dependencies=[Depends(require_admin)], status_code=201)
def create_product(payload: Product):
    if not collection("category").find_one({"slug": payload.category}):
        raise HTTPException(status_code=400, detail="Category not found")
    pid = create_document("product", payload)
    return {"success": True, "data": {"id": pid, **payload.model_dump()}}


@app.get("/produtos")
def list_products(q: Optional[str] = None, category: Optional[str] = None):
    filter_q = {}
    if q:
        filter_q["name"] = {"$regex": q, "$options": "i"}
    if category:
        filter_q["category"] = category
    return {"success": True, "data": [serialize(p) for p in get_documents("product", filter_q, limit=100)]}


def _product_or_404(product_id: str):
    product = collection("product").find_one({"_id": parse_id(product_id, "Product not found")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/produtos/{product_id}")
def get_product(product_id: str):
    return {"success": True, "data": serialize(_product_or_404(product_id))}


@app.put("/produtos/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdate):
    changes = payload.model_dump(exclude_unset=True)
    changes["updated_at"] = datetime.now(timezone.utc)
    doc = collection("product").find_one_and_update(
        {"_id": parse_id(product_id, "Product not found")},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": serialize(doc)}


# Review endpoints
class ReviewIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="produtoId")
    rating: int = Field(..., alias="nota", ge=1, le=5)
    comment: Optional[str] = Field(None, alias="comentario", max_length=1000)


class ReviewUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rating: Optional[int] = Field(None, alias="nota", ge=1, le=5)
    comment: Optional[str] = Field(None, alias="comentario", max_length=1000)


def _own_review(review_id: str, user) -> dict:
    review = reviews.get_review(review_id)
    if review["user_id"] != user_id_of(user) and not is_admin(user):
        raise PermissionDeniedError("You do not have permission to change this review")
    return review


@app.get("/avaliacoes")
def list_reviews(
    product_id: Optional[str] = Query(None, alias="produtoId"),
    user_id: Optional[str] = Query(None, alias="usuarioId"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    filt = {}
    if product_id:
        filt["product_id"] = product_id
    if user_id:
        filt["user_id"] = user_id
    result = paginate("review", filt, page, limit)
    result["averageRating"] = reviews.average_rating(product_id) if product_id else 0
    return result


@app.get("/avaliacoes/produto/{product_id}/estatisticas")
def review_stats(product_id: str):
    return {"success": True, "data": reviews.rating_stats(product_id)}


@app.post("/avaliacoes", status_code=201)
def create_review(payload: ReviewIn, user=Depends(get_current_user)):
    _product_or_404(payload.product_id)
    review = reviews.create_review(user_id_of(user), payload.product_id, payload.rating, payload.comment)
    return {"success": True, "message": "Review created", "data": serialize(review)}


@app.put("/avaliacoes/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, user=Depends(get_current_user)):
    review = reviews.update_review(_own_review(review_id, user), payload.model_dump(exclude_unset=True))
    return {"success": True, "message": "Review updated", "data": serialize(review)}


@app.delete("/avaliacoes/{review_id}")
def delete_review(review_id: str, user=Depends(get_current_user)):
    reviews.delete_review(_own_review(review_id, user))
    return {"success": True, "message": "Review removed"}


# Cart endpoints (per-user)
class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


def _check_stock(product, quantity: int):
    if product.get("stock", 0) < quantity:
        raise HTTPException(status_code=400, detail=f"Insufficient stock. Available: {product.get('stock', 0)}")


@app.get("/carrinho")
def get_cart(user=Depends(get_current_user)):
    lines = []
    total_items = 0
    total_value = 0.0
    for line, product in orders.load_cart(user_id_of(user)):
        item = serialize(line)
        item["product"] = serialize(product)
        if product is not None:
            total_items += line["quantity"]
            total_value += orders.effective_price(product) * line["quantity"]
        lines.append(item)
    return {"success": True, "data": lines, "totalItens": total_items, "valorTotal": round(total_value, 2)}


@app.post("/carrinho/adicionar")
def add_to_cart(payload: CartItemIn, user=Depends(get_current_user)):
    product = _product_or_404(payload.product_id)

    existing = collection("cartitem").find_one({"user_id": user_id_of(user), "product_id": payload.product_id})
    _check_stock(product, payload.quantity + (existing["quantity"] if existing else 0))

    if existing:
        doc = collection("cartitem").find_one_and_update(
            {"_id": existing["_id"]},
            {"$inc": {"quantity": payload.quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        return {"success": True, "message": "Item added to cart", "data": serialize(doc)}

    item_id = create_document("cartitem", CartItem(
        user_id=user_id_of(user),
        product_id=payload.product_id,
        quantity=payload.quantity,
        price=orders.effective_price(product),
    ))
    return {"success": True, "message": "Item added to cart", "data": serialize(collection("cartitem").find_one({"_id": ObjectId(item_id)}))}


@app.put("/carrinho/item/{item_id}")
def update_cart_item(item_id: str, payload: CartItemUpdate, user=Depends(get_current_user)):
    line = collection("cartitem").find_one({"_id": parse_id(item_id, "Cart item not found"), "user_id": user_id_of(user)})
    if not line:
        raise HTTPException(status_code=404, detail="Cart item not found")
    _check_stock(_product_or_404(line["product_id"]), payload.quantity)

    doc = collection("cartitem").find_one_and_update(
        {"_id": line["_id"]},
        {"$set": {"quantity": payload.quantity, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "message": "Cart item updated", "data": serialize(doc)}


@app.delete("/carrinho/item/{item_id}")
def remove_from_cart(item_id: str, user=Depends(get_current_user)):
    doc = collection("cartitem").find_one({"_id": parse_id(item_id, "Cart item not found"), "user_id": user_id_of(user)})
    if not doc:
        raise HTTPException(status_code=404, detail="Cart item not found")
    collection("cartitem").delete_one({"_id": doc["_id"]})
    return {"success": True, "message": "Item removed from cart"}


@app.delete("/carrinho/limpar")
def clear_cart(user=Depends(get_current_user)):
    result = collection("cartitem").delete_many({"user_id": user_id_of(user)})
    return {"success": True, "message": "Cart cleared", "removed": result.deleted_count}


# Address endpoints
class AddressIn(BaseModel):
    street: str = Field(..., min_length=1)
    number: str = Field(..., min_length=1)
    complement: Optional[str] = None
    district: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=2)
    zip_code: str = Field(..., min_length=5)
    country: str = "Brasil"
    is_default: bool = False


class AddressUpdate(BaseModel):
    street: Optional[str] = None
    number: Optional[str] = None
    complement: Optional[str] = None
    district: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    is_default: Optional[bool] = None


def _owned_address(address_id: str, user):
    address = collection("address").find_one({"_id": parse_id(address_id, "Address not found"), "user_id": user_id_of(user)})
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    return address


def _clear_default_address(user_id: str):
    collection("address").update_many({"user_id": user_id, "is_default": True}, {"$set": {"is_default": False}})


@app.get("/enderecos")
def list_addresses(user=Depends(get_current_user)):
    items = collection("address").find({"user_id": user_id_of(user)}).sort([("is_default", -1), ("created_at", -1)])
    data = [serialize(a) for a in items]
    return {"success": True, "data": data, "total": len(data)}


@app.post("/enderecos", status_code=201)
def create_address(payload: AddressIn, user=Depends(get_current_user)):
    if payload.is_default:
        _clear_default_address(user_id_of(user))
    aid = create_document("address", Address(user_id=user_id_of(user), **payload.model_dump()))
    return {"success": True, "message": "Address created", "data": serialize(collection("address").find_one({"_id": ObjectId(aid)}))}


@app.put("/enderecos/{address_id}")
def update_address(address_id: str, payload: AddressUpdate, user=Depends(get_current_user)):
    address = _owned_address(address_id, user)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("is_default"):
        _clear_default_address(user_id_of(user))
    changes["updated_at"] = datetime.now(timezone.utc)
    doc = collection("address").find_one_and_update({"_id": address["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER)
    return {"success": True, "message": "Address updated", "data": serialize(doc)}


@app.patch("/enderecos/{address_id}/padrao")
def set_default_address(address_id: str, user=Depends(get_current_user)):
    address = _owned_address(address_id, user)
    _clear_default_address(user_id_of(user))
    doc = collection("address").find_one_and_update(
        {"_id": address["_id"]},
        {"$set": {"is_default": True, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "message": "Default address set", "data": serialize(doc)}


@app.delete("/enderecos/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user)):
    address = _owned_address(address_id, user)
    collection("address").delete_one({"_id": address["_id"]})
    return {"success": True, "message": "Address removed"}


# Coupon endpoints (admin)
class CouponIn(BaseModel):
    code: str = Field(..., min_length=2)
    discount_type: DiscountType
    value: float = Field(..., gt=0)
    valid_until: datetime
    active: bool = True


@app.post("/cupons", dependencies=[Depends(require_admin)], status_code=201)
def create_coupon(payload: CouponIn):
    if collection("coupon").find_one({"code": payload.code}):
        raise HTTPException(status_code=400, detail="Coupon code already exists")
    cid = create_document("coupon", Coupon(**payload.model_dump()))
    return {"success": True, "data": serialize(collection("coupon").find_one({"_id": ObjectId(cid)}))}


@app.get("/cupons", dependencies=[Depends(require_admin)])
def list_coupons():
    return {"success": True, "data": [serialize(c) for c in get_documents("coupon")]}


# Orders
class OrderCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address_id: str = Field(..., alias="enderecoId")
    payment_method: PaymentMethod = Field(..., alias="metodoPagamento")
    notes: Optional[str] = Field(None, alias="observacoes", max_length=500)
    coupon: Optional[str] = Field(None, alias="cupom")


class OrderCancel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: str = Field(..., alias="motivo", min_length=1)


class OrderStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: OrderStatus
    cancel_reason: Optional[str] = Field(None, alias="motivoCancelamento")


def _visible_order(order_id: str, user) -> dict:
    order = orders.get_order(order_id)
    if order["user_id"] != user_id_of(user) and not is_admin(user):
        raise PermissionDeniedError("You do not have permission to access this order")
    return order


@app.post("/pedidos/criar", status_code=201, dependencies=[Depends(order_limiter)])
def create_order(payload: OrderCreate, user=Depends(get_current_user)):
    order, payment = orders.place_order(
        user_id_of(user),
        payload.address_id,
        payload.payment_method,
        notes=payload.notes,
        coupon_code=payload.coupon,
    )
    return {
        "success": True,
        "message": "Order created",
        "pedido": order,
        "pagamento": payment,
        "pagamentoUrl": f"/pagamentos/{payment['id']}/verificar",
    }


@app.get("/pedidos/meus-pedidos")
def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    user=Depends(get_current_user),
):
    filt = {"user_id": user_id_of(user)}
    if status:
        filt["status"] = status
    return paginate("order", filt, page, limit)


@app.get("/pedidos/estatisticas", dependencies=[Depends(require_admin)])
def order_stats(
    start: Optional[datetime] = Query(None, alias="dataInicio"),
    end: Optional[datetime] = Query(None, alias="dataFim"),
):
    return {"success": True, "data": orders.order_statistics(start, end)}


@app.get("/pedidos", dependencies=[Depends(require_admin)])
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    start: Optional[datetime] = Query(None, alias="dataInicio"),
    end: Optional[datetime] = Query(None, alias="dataFim"),
):
    filt = {}
    if status:
        filt["status"] = status
    if start or end:
        filt["created_at"] = {}
        if start:
            filt["created_at"]["$gte"] = start
        if end:
            filt["created_at"]["$lte"] = end
    return paginate("order", filt, page, limit)


@app.get("/pedidos/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    order = serialize(_visible_order(order_id, user))
    order["payments"] = [serialize(p) for p in collection("payment").find({"order_id": order["id"]})]
    return {"success": True, "data": order}


@app.post("/pedidos/{order_id}/cancelar")
def cancel_order(order_id: str, payload: OrderCancel, user=Depends(get_current_user)):
    order = orders.cancel_order(_visible_order(order_id, user), payload.reason)
    return {"success": True, "message": "Order cancelled", "data": serialize(order)}


@app.put("/pedidos/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: OrderStatusUpdate):
    order = orders.update_status(orders.get_order(order_id), payload.status, payload.cancel_reason)
    return {"success": True, "message": "Order status updated", "data": serialize(order)}


# Payments
class RefundIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: Optional[str] = Field(None, alias="motivo")


@app.get("/pagamentos/metodos")
def payment_methods():
    return {"success": True, "data": payments.PAYMENT_METHODS}


@app.post("/pagamentos/webhook/{gateway}")
def payment_webhook(gateway: str, body: dict):
    if gateway not in payments.SUPPORTED_GATEWAYS:
        raise HTTPException(status_code=400, detail=f"Unsupported gateway: {gateway}")
    logger.info("Webhook received from gateway %s", gateway)
    payment = payments.handle_notification(gateway, body)
    return {"received": True, "processed": payment is not None}


@app.get("/pagamentos/{payment_id}/verificar")
def verify_payment(payment_id: str, user=Depends(get_current_user)):
    payment = payments.get_payment(payment_id)
    if payment["user_id"] != user_id_of(user) and not is_admin(user):
        raise PermissionDeniedError("You do not have permission to view this payment")
    return {"success": True, "data": serialize(payment), "status": payment["status"]}


@app.get("/pagamentos", dependencies=[Depends(require_admin)])
def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    method: Optional[str] = Query(None, alias="metodo"),
):
    filt = {}
    if status:
        filt["status"] = status
    if method:
        filt["method"] = method
    return paginate("payment", filt, page, limit)


@app.post("/pagamentos/{payment_id}/estornar", dependencies=[Depends(require_admin)])
def refund_payment(payment_id: str, payload: RefundIn):
    payment = payments.refund_payment(payments.get_payment(payment_id), payload.reason)
    return {"success": True, "message": "Payment refunded", "data": serialize(payment)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
