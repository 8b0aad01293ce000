import hashlib
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Annotated, Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Path, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from carts import CartService
from catalog import CatalogService
from database import USERS, as_utc, connect, create_document, utcnow
from errors import StoreError, ValidationError
from identifiers import ensure_id, is_valid_phone
from orders import OrderService
from promos import PromoService
from schemas import (
    UserCreate, UserLogin, UserUpdate, TokenResponse, CartMerge,
    ProductCreate, ProductUpdate, StockAdjust, DiscountApply,
    PromoCreate, PromoUpdate,
    ShippingCreate, ShippingUpdate,
    OrderCreate, OrderUpdate, CustomerOrderUpdate,
)
from shipping import ShippingService

logger = logging.getLogger(__name__)

router = APIRouter()

PRIVATE_FIELDS = {"password_hash", "salt", "token", "token_expires"}

IdPath = Annotated[int, Path(ge=100000, le=999999)]

# -------------------- Helpers --------------------


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash)


def doc_to_json(doc: Any) -> Any:
    if isinstance(doc, list):
        return [doc_to_json(x) for x in doc]
    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k in PRIVATE_FIELDS:
            continue
        out["id" if k == "_id" else k] = doc_to_json(v)
    return out


def parse_json_param(raw: Optional[str], name: str) -> Optional[Any]:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name} JSON")


def parse_sort(raw: Optional[str]) -> Optional[List[tuple]]:
    sort = parse_json_param(raw, "sort")
    if sort is None:
        return None
    if not isinstance(sort, dict) or any(d not in (1, -1) for d in sort.values()):
        raise ValidationError("sort must be an object of field: 1 | -1")
    return list(sort.items())


def parse_filter(raw: Optional[str]) -> Dict[str, Any]:
    filter_dict = parse_json_param(raw, "filter")
    if filter_dict is None:
        return {}
    if not isinstance(filter_dict, dict):
        raise ValidationError("filter must be a JSON object")
    return filter_dict


# -------------------- Dependencies --------------------


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_clock(request: Request) -> Callable[[], datetime]:
    return request.app.state.clock


def get_orders(db: Database = Depends(get_db), clock=Depends(get_clock)) -> OrderService:
    return OrderService(db, clock)


def get_catalog(db: Database = Depends(get_db), clock=Depends(get_clock)) -> CatalogService:
    return CatalogService(db, clock)


def get_promos(db: Database = Depends(get_db), clock=Depends(get_clock)) -> PromoService:
    return PromoService(db, clock)


def get_shipping(db: Database = Depends(get_db), clock=Depends(get_clock)) -> ShippingService:
    return ShippingService(db, clock)


class AuthUser(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: str = "customer"
    phone: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def auth_dependency(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
    clock=Depends(get_clock),
) -> AuthUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Authentication required")
    token = authorization.split(" ", 1)[1]
    user = db[USERS].find_one({"token": token})
    expires = as_utc(user.get("token_expires")) if user else None
    if not user or expires is None or expires <= clock():
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return AuthUser(
        id=user["_id"], email=user["email"], name=user.get("name", ""),
        role=user.get("role", "customer"), phone=user.get("phone"),
    )


def require_admin(user: AuthUser = Depends(auth_dependency)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def require_editor_or_admin(user: AuthUser = Depends(auth_dependency)) -> AuthUser:
    if user.role not in ("admin", "editor"):
        raise HTTPException(status_code=403, detail="Editor or Admin only")
    return user


def require_phone(user: AuthUser = Depends(auth_dependency)) -> AuthUser:
    if not is_valid_phone(user.phone):
        raise HTTPException(status_code=403, detail={"code": "MISSING_PHONE", "message": "Phone number required"})
    return user


def ensure_self_or_admin(user: AuthUser, user_id: int):
    if user.id != user_id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")


# -------------------- Health --------------------

@router.get("/")
def read_root():
    return {"message": "Storefront API is running"}


@router.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"status": "ok", "database": "Not Connected"}
    try:
        db.list_collection_names()
        response["database"] = "Connected"
    except Exception as e:
        response["status"] = "degraded"
        response["database"] = f"Error: {str(e)[:50]}"
    return response


# -------------------- Auth --------------------

@router.post("/auth/register", status_code=201)
def register(payload: UserCreate, db: Database = Depends(get_db), clock=Depends(get_clock)):
    users = db[USERS]
    if users.find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    pw_hash, salt = hash_password(payload.password)
    now = clock()
    user_doc = {
        "_id": ensure_id(users),
        "name": payload.name,
        "email": payload.email,
        "phone": payload.phone,
        "password_hash": pw_hash,
        "salt": salt,
        "role": "customer",
        "addresses": [],
        "wishlist": [],
        "cart_items": [],
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    create_document(db, USERS, user_doc)
    return doc_to_json(user_doc)


@router.post("/auth/login", response_model=TokenResponse)
def login(payload: UserLogin, db: Database = Depends(get_db), clock=Depends(get_clock)):
    user = db[USERS].find_one({"email": payload.email})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(payload.password, user.get("salt", ""), user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = secrets.token_urlsafe(32)
    now = clock()
    expires = now + timedelta(days=config.TOKEN_TTL_DAYS)
    db[USERS].update_one(
        {"_id": user["_id"]}, {"$set": {"token": token, "token_expires": expires, "last_login": now}}
    )
    return TokenResponse(access_token=token)


@router.get("/me", response_model=AuthUser)
def me(user: AuthUser = Depends(auth_dependency)):
    return user


# -------------------- Users & carts --------------------

@router.get("/users/{user_id}")
def get_user(user_id: IdPath, user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    ensure_self_or_admin(user, user_id)
    doc = db[USERS].find_one({"_id": user_id})
    if not doc:
        raise HTTPException(status_code=404, detail="User not found")
    return doc_to_json(doc)


@router.patch("/users/{user_id}")
def update_user(
    payload: UserUpdate,
    user_id: IdPath,
    user: AuthUser = Depends(auth_dependency),
    db: Database = Depends(get_db),
    clock=Depends(get_clock),
):
    ensure_self_or_admin(user, user_id)
    if payload.role is not None and not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    update = {k: v for k, v in payload.model_dump().items() if v is not None}
    update["updated_at"] = clock()
    if db[USERS].update_one({"_id": user_id}, {"$set": update}).matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    return doc_to_json(db[USERS].find_one({"_id": user_id}))


@router.delete("/users/{user_id}")
def delete_user(
    user_id: IdPath,
    user: AuthUser = Depends(require_admin),
    db: Database = Depends(get_db),
    orders: OrderService = Depends(get_orders),
):
    if not db[USERS].find_one({"_id": user_id}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="User not found")
    removed = orders.delete_user_orders(user_id)
    db[USERS].delete_one({"_id": user_id})
    return {"deleted": True, "orders_deleted": removed}


@router.post("/users/{user_id}/cart/merge")
def merge_cart(
    payload: CartMerge,
    user_id: IdPath,
    user: AuthUser = Depends(auth_dependency),
    db: Database = Depends(get_db),
):
    ensure_self_or_admin(user, user_id)
    local_items = [i.model_dump(exclude_none=True) for i in payload.items]
    return {"items": CartService(db).merge(user_id, local_items)}


@router.post("/users/{user_id}/cart/validate")
def validate_cart(user_id: IdPath, user: AuthUser = Depends(auth_dependency), db: Database = Depends(get_db)):
    ensure_self_or_admin(user, user_id)
    return CartService(db).validate(user_id)


# -------------------- Products --------------------

@router.post("/products", status_code=201)
def create_product(
    payload: ProductCreate,
    user: AuthUser = Depends(require_editor_or_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return doc_to_json(catalog.create_product(payload))


@router.get("/products")
def list_products(
    filter: Optional[str] = Query(None),
    sort: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    catalog: CatalogService = Depends(get_catalog),
):
    filter_dict = parse_filter(filter) or None
    result = catalog.list_products(filter_dict, sort=parse_sort(sort), limit=limit, skip=skip)
    return {"items": doc_to_json(result["items"]), "total": result["total"]}


@router.get("/products/{product_id}")
def get_product(product_id: IdPath, catalog: CatalogService = Depends(get_catalog)):
    return doc_to_json(catalog.get_product(product_id))


@router.patch("/products/{product_id}")
def update_product(
    payload: ProductUpdate,
    product_id: IdPath,
    user: AuthUser = Depends(require_editor_or_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return doc_to_json(catalog.update_product(product_id, payload))


@router.delete("/products/{product_id}")
def delete_product(
    product_id: IdPath,
    user: AuthUser = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.delete_product(product_id)


@router.post("/products/{product_id}/variants/{sku}/stock")
def adjust_stock(
    payload: StockAdjust,
    sku: str,
    product_id: IdPath,
    user: AuthUser = Depends(require_editor_or_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.restock(product_id, sku, payload.delta)


# -------------------- Discounts & promos --------------------

@router.get("/discounts")
def list_discounts(user: AuthUser = Depends(require_editor_or_admin), catalog: CatalogService = Depends(get_catalog)):
    return doc_to_json(catalog.active_discounts())


@router.post("/discounts")
def apply_discount(
    payload: DiscountApply,
    user: AuthUser = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.apply_discount(payload.scope, payload.target_id, payload.discount, payload.variant_skus)


@router.get("/promos")
def list_promos(user: AuthUser = Depends(require_editor_or_admin), promos: PromoService = Depends(get_promos)):
    return doc_to_json(promos.list_promos())


@router.post("/promos", status_code=201)
def create_promo(
    payload: PromoCreate,
    user: AuthUser = Depends(require_editor_or_admin),
    promos: PromoService = Depends(get_promos),
):
    return doc_to_json(promos.create_promo(payload))


@router.get("/promos/validate/{code}")
def validate_promo(
    code: str,
    amount: Optional[float] = Query(None, ge=0),
    promos: PromoService = Depends(get_promos),
):
    return doc_to_json(promos.check_promo(code, amount=amount))


@router.patch("/promos/{promo_id}")
def update_promo(
    payload: PromoUpdate,
    promo_id: IdPath,
    user: AuthUser = Depends(require_editor_or_admin),
    promos: PromoService = Depends(get_promos),
):
    return doc_to_json(promos.update_promo(promo_id, payload))


@router.delete("/promos/{promo_id}")
def delete_promo(
    promo_id: IdPath,
    user: AuthUser = Depends(require_editor_or_admin),
    promos: PromoService = Depends(get_promos),
):
    return promos.delete_promo(promo_id)


# -------------------- Shipping --------------------

@router.get("/shipping")
def list_shipping(
    limit: int = Query(100, ge=1, le=500),
    skip: int = Query(0, ge=0),
    shipping: ShippingService = Depends(get_shipping),
):
    result = shipping.list_entries(limit=limit, skip=skip)
    return {"items": doc_to_json(result["items"]), "total": result["total"]}


@router.post("/shipping", status_code=201)
def create_shipping(
    payload: ShippingCreate,
    user: AuthUser = Depends(require_admin),
    shipping: ShippingService = Depends(get_shipping),
):
    return doc_to_json(shipping.create_entry(payload))


@router.patch("/shipping/{entry_id}")
def update_shipping(
    entry_id: str,
    payload: ShippingUpdate,
    user: AuthUser = Depends(require_admin),
    shipping: ShippingService = Depends(get_shipping),
):
    return doc_to_json(shipping.update_entry(entry_id, payload))


# -------------------- Orders --------------------

@router.post("/orders", status_code=201)
def create_order(
    payload: OrderCreate,
    user: AuthUser = Depends(require_phone),
    orders: OrderService = Depends(get_orders),
):
    user_id = payload.user_id if payload.user_id is not None else user.id
    ensure_self_or_admin(user, user_id)
    return doc_to_json(orders.create_order(payload, user_id))


@router.get("/orders")
def list_orders(
    filter: Optional[str] = Query(None),
    sort: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    user: AuthUser = Depends(auth_dependency),
    orders: OrderService = Depends(get_orders),
):
    filter_dict = parse_filter(filter)
    if not user.is_admin:
        filter_dict["user_id"] = user.id
    result = orders.list_orders(filter_dict, sort=parse_sort(sort), limit=limit, skip=skip)
    return {"items": doc_to_json(result["items"]), "total": result["total"]}


@router.get("/orders/{order_id}")
def get_order(
    order_id: IdPath,
    user: AuthUser = Depends(auth_dependency),
    orders: OrderService = Depends(get_orders),
):
    owner = None if user.is_admin else user.id
    return doc_to_json(orders.get_order(order_id, user_id=owner))


@router.patch("/orders/{order_id}")
def update_order(
    payload: OrderUpdate,
    order_id: IdPath,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_orders),
):
    return doc_to_json(orders.update_order(order_id, payload))


@router.patch("/orders/{order_id}/customer")
def update_order_for_customer(
    payload: CustomerOrderUpdate,
    order_id: IdPath,
    user: AuthUser = Depends(auth_dependency),
    orders: OrderService = Depends(get_orders),
):
    return doc_to_json(orders.update_order_for_customer(order_id, user.id, payload))


@router.post("/orders/{order_id}/customer/cancel")
def cancel_order_for_customer(
    order_id: IdPath,
    user: AuthUser = Depends(auth_dependency),
    orders: OrderService = Depends(get_orders),
):
    return doc_to_json(orders.cancel_order_for_customer(order_id, user.id))


@router.delete("/orders/{order_id}")
def delete_order(
    order_id: IdPath,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_orders),
):
    return orders.delete_order(order_id)


# -------------------- Error handling --------------------


async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"code": 400, "message": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"code": exc.status_code, "message": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


def create_app(db: Optional[Database] = None, clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="Storefront API")
    app.state.db = db if db is not None else connect()
    app.state.clock = clock or utcnow

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
