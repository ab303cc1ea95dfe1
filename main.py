import hashlib
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError
from bson.objectid import ObjectId
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import (
    db,
    DatabaseNotConfigured,
    adjust_counter,
    count_documents,
    create_document,
    delete_document,
    ensure_indexes,
    find_by_field,
    find_one_by_field,
    get_document_by_id,
    get_documents,
    get_documents_by_ids,
    list_documents,
    update_document,
    upsert_by_field,
)
from pricing import (
    calculate_cart_totals,
    calculate_order_totals,
    create_slug,
    generate_order_id,
    round1,
    round2,
)
from ratelimit import RateLimiter
from schemas import (
    NON_CANCELLABLE_STATUSES,
    Address,
    Cart as CartSchema,
    CartItem as CartItemSchema,
    Category as CategorySchema,
    Order as OrderSchema,
    OrderItem as OrderItemSchema,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product as ProductSchema,
    Review as ReviewSchema,
    User as UserSchema,
    Wishlist as WishlistSchema,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------- Config -----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
TOKEN_TTL = timedelta(days=7)
security = HTTPBearer(auto_error=False)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


app.state.rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100")),
    window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60))),
    enabled=_env_flag("RATE_LIMIT_ENABLED"),
)


# ----------------------- Utils -----------------------
def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # convert datetimes
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def public_user(user: dict) -> dict:
    user = serialize_doc(user)
    user.pop("password_hash", None)
    return user


def success(message: str, data=None) -> dict:
    return {"success": True, "message": message, "data": data}


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + TOKEN_TTL
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = get_document_by_id("user", user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(user)


async def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user


def ensure_owner_or_admin(user: dict, owner_id: str):
    if user["id"] != owner_id and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not allowed")


# ----------------------- Middleware & errors -----------------------
@app.middleware("http")
async def rate_limit(request: Request, call_next):
    limiter: RateLimiter = request.app.state.rate_limiter
    if limiter.enabled:
        ip = request.client.host if request.client else "unknown"
        if not limiter.hit(ip):
            logger.warning("Rate limit exceeded for %s", ip)
            return JSONResponse(status_code=429, content={"success": False, "message": "Too many requests"})
    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    missing = [str(e["loc"][-1]) for e in errors if e.get("type") == "missing"]
    if missing:
        message = f"Missing required fields: {', '.join(missing)}"
    else:
        first = errors[0]
        field = ".".join(str(part) for part in first["loc"] if part not in ("body", "query", "path"))
        message = f"Invalid {field}: {first['msg']}"
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.info("Duplicate key on %s: %s", request.url.path, exc.details)
    return JSONResponse(status_code=409, content={"success": False, "message": "Resource already exists"})


@app.exception_handler(DatabaseNotConfigured)
async def database_not_configured_handler(request: Request, exc: DatabaseNotConfigured):
    return JSONResponse(status_code=500, content={"success": False, "message": "Database not configured"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Something went wrong"})


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    email: EmailStr
    password: str
    full_name: str


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class UserUpdateBody(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    full_name: Optional[str] = None


class ProductCreateBody(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    category: str
    images: List[str] = []
    set_trending: bool = False
    is_active: bool = True


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    set_trending: Optional[bool] = None
    is_active: Optional[bool] = None


class CategoryCreateBody(BaseModel):
    name: str
    description: Optional[str] = None


class CategoryUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class ReviewCreateBody(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: str


class HelpfulBody(BaseModel):
    user_id: str


class CartAddBody(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class CartUpdateBody(BaseModel):
    user_id: str
    product_id: str
    quantity: int


class WishlistAddBody(BaseModel):
    user_id: str
    product_id: str


class CheckoutItemBody(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CheckoutBody(BaseModel):
    user_id: Optional[str] = None
    items: Optional[List[CheckoutItemBody]] = None
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    payment_method: Optional[PaymentMethod] = None


class OrderStatusUpdateBody(BaseModel):
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = None


class CancelOrderBody(BaseModel):
    reason: Optional[str] = None


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {
        "message": "Storefront API running",
        "version": app.version,
        "endpoints": {
            "auth": "/api/auth",
            "products": "/api/products",
            "categories": "/api/categories",
            "reviews": "/api/reviews",
            "cart": "/api/cart",
            "wishlist": "/api/wishlist",
            "orders": "/api/orders",
        },
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/register")
def register(body: RegisterBody):
    if len(body.password) < 6:
        raise HTTPException(status_code=400, detail="Password should be at least 6 characters")
    if find_one_by_field("user", "email", body.email):
        raise HTTPException(status_code=409, detail="User with this email already exists")
    user = UserSchema(
        email=body.email,
        full_name=body.full_name,
        password_hash=hash_password(body.password),
        role="customer",
    )
    user_id = create_document("user", user)
    token = create_token({"id": user_id, "email": body.email, "role": user.role})
    return success("User registered successfully", {
        "user": {"id": user_id, "email": body.email, "full_name": body.full_name, "role": user.role},
        "token": token,
    })


@app.post("/api/auth/login")
def login(body: LoginBody):
    user = find_one_by_field("user", "email", body.email)
    if not user or user.get("password_hash") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    suser = public_user(user)
    token = create_token({"id": suser["id"], "email": suser["email"], "role": suser.get("role", "customer")})
    return success("Login successful", {
        "user": {
            "id": suser["id"],
            "email": suser["email"],
            "full_name": suser.get("full_name"),
            "role": suser.get("role", "customer"),
        },
        "token": token,
    })


@app.put("/api/auth/user/{uid}")
def update_auth_user(uid: str, body: UserUpdateBody, user=Depends(get_current_user)):
    ensure_owner_or_admin(user, uid)
    if not get_document_by_id("user", uid):
        raise HTTPException(status_code=404, detail="User not found")

    update = {}
    if body.email:
        existing = find_one_by_field("user", "email", body.email)
        if existing and str(existing["_id"]) != uid:
            raise HTTPException(status_code=409, detail="Email already in use")
        update["email"] = body.email
    if body.full_name:
        update["full_name"] = body.full_name
    if body.password:
        if len(body.password) < 6:
            raise HTTPException(status_code=400, detail="Password should be at least 6 characters")
        update["password_hash"] = hash_password(body.password)

    updated = update_document("user", uid, update)
    return success("User updated successfully", {"user": public_user(updated)})


# ----------------------- Products -----------------------
@app.get("/api/products")
def list_products(limit: Optional[int] = None, page_token: Optional[str] = None, include_total: bool = False):
    result = list_documents("product", limit=limit, page_token=page_token, include_total=include_total)
    result["items"] = [serialize_doc(p) for p in result["items"]]
    return success("Products retrieved successfully", result)


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = get_document_by_id("product", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return success("Product retrieved successfully", serialize_doc(product))


@app.get("/api/products/{product_id}/related")
def get_related_products(product_id: str, limit: int = 4):
    product = get_document_by_id("product", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    related: List[dict] = []
    seen = {product_id}

    def take(candidates):
        for candidate in candidates:
            if len(related) >= limit:
                return
            cid = str(candidate["_id"])
            if cid in seen or not candidate.get("is_active", True):
                continue
            seen.add(cid)
            related.append(candidate)

    # same category first, then trending, then anything active
    take(find_by_field("product", "category", product.get("category")))
    if len(related) < limit:
        take(find_by_field("product", "set_trending", True))
    if len(related) < limit:
        take(find_by_field("product", "is_active", True))

    return success("Related products retrieved successfully", [serialize_doc(p) for p in related])


@app.post("/api/products")
def create_product(body: ProductCreateBody, user=Depends(require_admin)):
    product = ProductSchema(**body.model_dump())
    pid = create_document("product", product)
    return success("Product created successfully", serialize_doc(get_document_by_id("product", pid)))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_admin)):
    update = body.model_dump(exclude_none=True)
    updated = update_document("product", product_id, update)
    if not updated:
        raise HTTPException(status_code=404, detail="Product not found")
    return success("Product updated successfully", serialize_doc(updated))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin)):
    if not delete_document("product", product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return success("Product deleted successfully")


# ----------------------- Categories -----------------------
def active_product_count(category_name: str) -> int:
    return count_documents("product", {"category": category_name, "is_active": True})


def find_conflicting_category(name: str, slug: str, exclude_id: Optional[str] = None) -> Optional[dict]:
    for existing in (find_one_by_field("category", "name", name), find_one_by_field("category", "slug", slug)):
        if existing and str(existing["_id"]) != exclude_id:
            return existing
    return None


@app.post("/api/categories")
def create_category(body: CategoryCreateBody, user=Depends(require_admin)):
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")
    slug = create_slug(name)
    if find_conflicting_category(name, slug):
        raise HTTPException(status_code=409, detail="Category with this name already exists")

    category = CategorySchema(name=name, slug=slug, description=(body.description or "").strip())
    cid = create_document("category", category)
    return success("Category created successfully", serialize_doc(get_document_by_id("category", cid)))


@app.get("/api/categories")
def list_categories(include_inactive: bool = False, include_product_count: bool = False):
    filt = {} if include_inactive else {"is_active": True}
    categories = [serialize_doc(c) for c in get_documents("category", filt)]
    if include_product_count:
        for category in categories:
            category["product_count"] = active_product_count(category["name"])
    categories.sort(key=lambda c: c["name"].lower())
    return success("Categories retrieved successfully", categories)


@app.get("/api/categories/slug/{slug}")
def get_category_by_slug(slug: str):
    category = find_one_by_field("category", "slug", slug)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    products = get_documents("product", {"category": category["name"], "is_active": True})
    data = serialize_doc(category)
    data["product_count"] = len(products)
    return success("Category and products retrieved successfully", {
        "category": data,
        "products": [serialize_doc(p) for p in products],
    })


@app.get("/api/categories/slug/{slug}/products")
def get_products_by_category(slug: str, limit: Optional[int] = None, include_inactive: bool = False):
    category = find_one_by_field("category", "slug", slug)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    filt = {"category": category["name"]}
    if not include_inactive:
        filt["is_active"] = True
    products = get_documents(
        "product",
        filt,
        limit=limit if limit and limit > 0 else None,
        sort=[("created_at", -1), ("_id", -1)],
    )
    return success("Products retrieved successfully", {
        "category": {
            "id": str(category["_id"]),
            "name": category["name"],
            "slug": category["slug"],
            "description": category.get("description"),
        },
        "products": [serialize_doc(p) for p in products],
        "total_products": len(products),
    })


@app.get("/api/categories/{category_id}")
def get_category(category_id: str):
    category = get_document_by_id("category", category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    data = serialize_doc(category)
    data["product_count"] = active_product_count(category["name"])
    return success("Category retrieved successfully", data)


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdateBody, user=Depends(require_admin)):
    category = get_document_by_id("category", category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    update = {}
    if body.name and body.name.strip():
        new_name = body.name.strip()
        new_slug = create_slug(new_name)
        if find_conflicting_category(new_name, new_slug, exclude_id=category_id):
            raise HTTPException(status_code=409, detail="Category with this name already exists")
        update["name"] = new_name
        update["slug"] = new_slug

        # Products point at categories by name. One write per product, no
        # transaction: a failure part way leaves some products on the old name.
        if new_name != category["name"]:
            products = find_by_field("product", "category", category["name"])
            for product in products:
                update_document("product", product["_id"], {"category": new_name})
            logger.info("Renamed category %r -> %r on %d products", category["name"], new_name, len(products))

    if body.description is not None:
        update["description"] = body.description.strip()
    if body.is_active is not None:
        update["is_active"] = body.is_active

    updated = update_document("category", category_id, update)
    return success("Category updated successfully", serialize_doc(updated))


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, user=Depends(require_admin)):
    category = get_document_by_id("category", category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")

    active = active_product_count(category["name"])
    if active > 0:
        raise HTTPException(status_code=409, detail=f"Cannot delete category. It has {active} active products")

    delete_document("category", category_id)
    return success("Category deleted successfully")


# ----------------------- Reviews -----------------------
def check_user_purchase(user_id: str, product_id: str) -> bool:
    """Whether the review author bought the product.

    Not implemented yet: always False, so every review is unverified.
    """
    return False


def recalculate_product_rating(product_id: str) -> dict:
    reviews = find_by_field("review", "product_id", product_id)
    if not reviews:
        return {"ratings": 0, "review_count": 0}
    average = sum(r["rating"] for r in reviews) / len(reviews)
    return {"ratings": round1(average), "review_count": len(reviews)}


@app.post("/api/reviews")
def add_review(body: ReviewCreateBody):
    if not get_document_by_id("product", body.product_id):
        raise HTTPException(status_code=404, detail="Product not found")

    try:
        is_verified = check_user_purchase(body.user_id, body.product_id)
    except Exception:
        logger.warning("Purchase check failed for user %s", body.user_id, exc_info=True)
        is_verified = False

    review = ReviewSchema(
        review_id=str(uuid.uuid4()),
        product_id=body.product_id,
        user_id=body.user_id,
        rating=body.rating,
        title=body.title,
        comment=body.comment,
        is_verified=is_verified,
    )
    rid = create_document("review", review)

    update_document("product", body.product_id, recalculate_product_rating(body.product_id))
    return success("Review added successfully", serialize_doc(get_document_by_id("review", rid)))


@app.get("/api/reviews/product/{product_id}")
def get_reviews_by_product(product_id: str):
    reviews = get_documents("review", {"product_id": product_id}, sort=[("created_at", -1), ("_id", -1)])
    return success("Reviews retrieved successfully", [serialize_doc(r) for r in reviews])


@app.get("/api/reviews/{review_id}")
def get_review(review_id: str):
    review = get_document_by_id("review", review_id)
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return success("Review retrieved successfully", serialize_doc(review))


@app.post("/api/reviews/{review_id}/helpful")
def mark_review_helpful(review_id: str, body: HelpfulBody):
    # user_id is part of the request contract; votes are not de-duplicated per user
    if not adjust_counter("review", review_id, "helpful_count", 1):
        raise HTTPException(status_code=404, detail="Review not found")
    return success("Review marked as helpful", serialize_doc(get_document_by_id("review", review_id)))


# ----------------------- Cart -----------------------
def get_or_create_cart(user_id: str) -> dict:
    defaults = CartSchema(user_id=user_id).model_dump(exclude={"user_id"})
    return upsert_by_field("cart", "user_id", user_id, defaults)


def save_cart_items(cart: dict, items: List[dict]) -> dict:
    totals = calculate_cart_totals(items)
    return update_document("cart", cart["_id"], totals)


def populate_cart(cart: dict) -> dict:
    """Attach live product details to each line without touching the stored cart."""
    items = cart.get("items", [])
    products = get_documents_by_ids("product", [i["product_id"] for i in items])
    populated = []
    for item in items:
        product = products.get(item["product_id"])
        populated.append({
            **item,
            "product": {
                "id": str(product["_id"]),
                "name": product.get("name"),
                "description": product.get("description"),
                "images": product.get("images", []),
                "current_price": product.get("price"),
                "stock": product.get("stock", 0),
                "is_active": product.get("is_active", True),
            } if product else None,
            "total": round2(item["price"] * item["quantity"]),
        })
    data = serialize_doc(cart)
    data["items"] = populated
    return data


def find_cart_or_404(user_id: str) -> dict:
    cart = find_one_by_field("cart", "user_id", user_id)
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    return cart


def find_line_index(items: List[dict], product_id: str) -> int:
    for index, item in enumerate(items):
        if item["product_id"] == product_id:
            return index
    raise HTTPException(status_code=404, detail="Item not found in cart")


@app.get("/api/cart/{user_id}")
def get_cart(user_id: str):
    return success("Cart retrieved successfully", populate_cart(get_or_create_cart(user_id)))


@app.post("/api/cart/add")
def add_to_cart(body: CartAddBody):
    product = get_document_by_id("product", body.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if not product.get("is_active", True):
        raise HTTPException(status_code=400, detail="Product is not available")
    if product.get("stock", 0) < body.quantity:
        raise HTTPException(status_code=400, detail="Insufficient stock")

    cart = get_or_create_cart(body.user_id)
    items = list(cart.get("items", []))
    existing = next((i for i in items if i["product_id"] == body.product_id), None)
    if existing:
        # keep the original snapshot price
        existing["quantity"] += body.quantity
    else:
        item = CartItemSchema(
            product_id=body.product_id,
            quantity=body.quantity,
            price=product["price"],
            added_at=datetime.now(timezone.utc),
        )
        items.append(item.model_dump())

    cart = save_cart_items(cart, items)
    return success("Item added to cart successfully", populate_cart(cart))


@app.put("/api/cart/update")
def update_cart_item(body: CartUpdateBody):
    cart = find_cart_or_404(body.user_id)
    items = list(cart.get("items", []))
    index = find_line_index(items, body.product_id)

    if body.quantity <= 0:
        items.pop(index)
    else:
        product = get_document_by_id("product", body.product_id)
        if product and product.get("stock", 0) < body.quantity:
            raise HTTPException(status_code=400, detail="Insufficient stock")
        items[index]["quantity"] = body.quantity

    cart = save_cart_items(cart, items)
    return success("Cart updated successfully", populate_cart(cart))


@app.delete("/api/cart/{user_id}/item/{product_id}")
def remove_from_cart(user_id: str, product_id: str):
    cart = find_cart_or_404(user_id)
    items = list(cart.get("items", []))
    items.pop(find_line_index(items, product_id))
    cart = save_cart_items(cart, items)
    return success("Item removed from cart successfully", populate_cart(cart))


@app.delete("/api/cart/{user_id}/clear")
def clear_cart(user_id: str):
    cart = find_cart_or_404(user_id)
    cart = save_cart_items(cart, [])
    return success("Cart cleared successfully", serialize_doc(cart))


# ----------------------- Wishlist -----------------------
def get_or_create_wishlist(user_id: str) -> dict:
    return upsert_by_field("wishlist", "user_id", user_id, WishlistSchema(user_id=user_id).model_dump(exclude={"user_id"}))


def populate_wishlist(wishlist: dict) -> dict:
    product_ids = wishlist.get("product_ids", [])
    found = get_documents_by_ids("product", product_ids)
    # deleted products drop out of the listing but stay in product_ids
    products = [serialize_doc(found[pid]) for pid in product_ids if pid in found]
    return {
        "id": str(wishlist["_id"]),
        "user_id": wishlist["user_id"],
        "product_ids": product_ids,
        "products": products,
        "item_count": len(products),
        "updated_at": wishlist.get("updated_at"),
    }


def find_wishlist_or_404(user_id: str) -> dict:
    wishlist = find_one_by_field("wishlist", "user_id", user_id)
    if not wishlist:
        raise HTTPException(status_code=404, detail="Wishlist not found")
    return wishlist


@app.get("/api/wishlist/{user_id}")
def get_wishlist(user_id: str, user=Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    return success("Wishlist retrieved successfully", populate_wishlist(get_or_create_wishlist(user_id)))


@app.post("/api/wishlist/add")
def add_to_wishlist(body: WishlistAddBody, user=Depends(get_current_user)):
    ensure_owner_or_admin(user, body.user_id)
    if not get_document_by_id("product", body.product_id):
        raise HTTPException(status_code=404, detail="Product not found")

    wishlist = get_or_create_wishlist(body.user_id)
    product_ids = list(wishlist.get("product_ids", []))
    if body.product_id in product_ids:
        raise HTTPException(status_code=400, detail="Product already in wishlist")
    product_ids.append(body.product_id)

    wishlist = update_document("wishlist", wishlist["_id"], {"product_ids": product_ids})
    return success("Product added to wishlist successfully", populate_wishlist(wishlist))


@app.delete("/api/wishlist/{user_id}/item/{product_id}")
def remove_from_wishlist(user_id: str, product_id: str, user=Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    wishlist = find_wishlist_or_404(user_id)
    product_ids = list(wishlist.get("product_ids", []))
    if product_id not in product_ids:
        raise HTTPException(status_code=404, detail="Product not found in wishlist")
    product_ids.remove(product_id)

    wishlist = update_document("wishlist", wishlist["_id"], {"product_ids": product_ids})
    return success("Product removed from wishlist successfully", populate_wishlist(wishlist))


@app.delete("/api/wishlist/{user_id}/clear")
def clear_wishlist(user_id: str, user=Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    wishlist = find_wishlist_or_404(user_id)
    wishlist = update_document("wishlist", wishlist["_id"], {"product_ids": []})
    return success("Wishlist cleared successfully", populate_wishlist(wishlist))


@app.get("/api/wishlist/{user_id}/status/{product_id}")
def check_wishlist_status(user_id: str, product_id: str, user=Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    wishlist = find_one_by_field("wishlist", "user_id", user_id)
    in_wishlist = bool(wishlist) and product_id in wishlist.get("product_ids", [])
    return success("Wishlist status checked", {"product_id": product_id, "is_in_wishlist": in_wishlist})


# ----------------------- Orders -----------------------
def release_stock(items: List[dict]):
    for item in items:
        if not adjust_counter("product", item["product_id"], "stock", item["quantity"]):
            logger.warning("Could not return %s units to product %s", item["quantity"], item["product_id"])


def reserve_stock(items: List[dict]):
    """Decrement stock for every line or for none of them."""
    reserved = []
    for item in items:
        ok = adjust_counter("product", item["product_id"], "stock", -item["quantity"], minimum=item["quantity"])
        if not ok:
            logger.warning("Stock for %s changed during checkout, rolling back %d lines", item["product_id"], len(reserved))
            release_stock(reserved)
            current = get_document_by_id("product", item["product_id"]) or {}
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient stock for {item['name']}. Available: {current.get('stock', 0)}",
            )
        reserved.append(item)


def clear_cart_after_checkout(user_id: str):
    try:
        cart = find_one_by_field("cart", "user_id", user_id)
        if cart:
            save_cart_items(cart, [])
    except Exception:
        logger.warning("Could not clear cart for user %s after checkout", user_id, exc_info=True)


def find_order_or_404(order_id: str) -> dict:
    order = get_document_by_id("order", order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/api/orders/checkout")
def checkout(body: CheckoutBody, user=Depends(get_current_user)):
    if not body.user_id or not body.items or not body.billing_address or not body.payment_method:
        raise HTTPException(status_code=400, detail="Missing required checkout information")
    ensure_owner_or_admin(user, body.user_id)

    # Validate every line before computing or writing anything
    products = []
    for item in body.items:
        product = get_document_by_id("product", item.product_id)
        if not product:
            raise HTTPException(status_code=404, detail=f"Product {item.product_id} not found")
        if not product.get("is_active", True):
            raise HTTPException(status_code=400, detail=f"Product {product['name']} is not available")
        if product.get("stock", 0) < item.quantity:
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient stock for {product['name']}. Available: {product.get('stock', 0)}",
            )
        products.append((product, item.quantity))

    order_items: List[OrderItemSchema] = []
    subtotal = 0.0
    for product, quantity in products:
        line_total = product["price"] * quantity
        order_items.append(OrderItemSchema(
            product_id=str(product["_id"]),
            name=product["name"],
            description=product.get("description"),
            price=product["price"],
            quantity=quantity,
            total=line_total,
            images=product.get("images") or [],
        ))
        subtotal += line_total

    totals = calculate_order_totals(subtotal, body.billing_address.country)
    order = OrderSchema(
        order_id=generate_order_id(),
        user_id=body.user_id,
        items=order_items,
        billing_address=body.billing_address,
        shipping_address=body.shipping_address or body.billing_address,
        payment_method=body.payment_method,
        **totals,
    )

    line_dicts = [oi.model_dump() for oi in order_items]
    reserve_stock(line_dicts)
    try:
        oid = create_document("order", order)
    except Exception:
        release_stock(line_dicts)
        raise

    logger.info("Order %s placed by %s, total %.2f", order.order_id, body.user_id, order.total)
    clear_cart_after_checkout(body.user_id)

    return success("Order created successfully", {
        "id": oid,
        "order_id": order.order_id,
        "total": order.total,
        "order_status": order.order_status,
        "payment_status": order.payment_status,
    })


@app.get("/api/orders/track/{order_id}")
def track_order(order_id: str):
    order = find_one_by_field("order", "order_id", order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    shipping_address = order.get("shipping_address") or {}
    return success("Order tracking info retrieved", {
        "order_id": order["order_id"],
        "order_status": order["order_status"],
        "tracking_number": order.get("tracking_number"),
        "created_at": order.get("created_at"),
        "delivered_at": order.get("delivered_at"),
        "shipping_address": {
            "city": shipping_address.get("city"),
            "country": shipping_address.get("country"),
        },
    })


@app.get("/api/orders/user/{user_id}")
def get_user_orders(user_id: str, limit: int = 10, status: Optional[OrderStatus] = None, user=Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    filt = {"user_id": user_id}
    if status:
        filt["order_status"] = status
    orders = get_documents("order", filt, limit=limit, sort=[("created_at", -1), ("_id", -1)])

    summaries = []
    for order in orders:
        items = order.get("items", [])
        first_images = items[0].get("images") if items else None
        summaries.append({
            "id": str(order["_id"]),
            "order_id": order["order_id"],
            "date": order.get("created_at"),
            "total": order["total"],
            "order_status": order["order_status"],
            "payment_status": order["payment_status"],
            "item_count": len(items),
            "first_item_image": first_images[0] if first_images else None,
        })
    return success("Orders retrieved successfully", summaries)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    order = find_order_or_404(order_id)
    ensure_owner_or_admin(user, order["user_id"])
    return success("Order retrieved successfully", serialize_doc(order))


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: Optional[CancelOrderBody] = None, user=Depends(get_current_user)):
    order = find_order_or_404(order_id)
    ensure_owner_or_admin(user, order["user_id"])

    if order["order_status"] in NON_CANCELLABLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Cannot cancel order with status: {order['order_status']}")

    update = {
        "order_status": "cancelled",
        "payment_status": "refunded" if order.get("payment_status") == "completed" else "failed",
    }
    if body and body.reason:
        update["cancellation_reason"] = body.reason

    # Only the request that flips the status gives the stock back
    updated = update_document(
        "order",
        order_id,
        update,
        condition={"order_status": {"$nin": list(NON_CANCELLABLE_STATUSES)}},
    )
    if updated is None:
        current = find_order_or_404(order_id)
        raise HTTPException(status_code=400, detail=f"Cannot cancel order with status: {current['order_status']}")

    # Best effort: products deleted since checkout are skipped
    release_stock(order.get("items", []))
    logger.info("Order %s cancelled", order["order_id"])
    return success("Order cancelled successfully", serialize_doc(updated))


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusUpdateBody, user=Depends(require_admin)):
    find_order_or_404(order_id)

    update = {}
    if body.order_status:
        update["order_status"] = body.order_status
        if body.order_status == "delivered":
            update["delivered_at"] = datetime.now(timezone.utc)
    if body.payment_status:
        update["payment_status"] = body.payment_status
    if body.tracking_number:
        update["tracking_number"] = body.tracking_number

    updated = update_document("order", order_id, update)
    return success("Order updated successfully", serialize_doc(updated))


# ----------------------- Startup -----------------------
def bootstrap_admin():
    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not email or not password:
        return
    if find_one_by_field("user", "email", email):
        return
    admin = UserSchema(
        email=email,
        full_name=os.getenv("ADMIN_NAME", "Admin"),
        password_hash=hash_password(password),
        role="admin",
    )
    create_document("user", admin)
    logger.info("Created admin user %s", email)


@app.on_event("startup")
def on_startup():
    if db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return
    ensure_indexes()
    bootstrap_admin()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
