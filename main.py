import hashlib
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr, Field
import jwt
from passlib.context import CryptContext
from pymongo.errors import PyMongoError

import cart as carts
import checkout
import database
import reporting
from errors import MailDeliveryError, ShopError
from mailer import EmailService
from payments import StripeGateway, intent_from_event_object
from schemas import (
    Address,
    OrderStatus,
    PaymentMethod,
    Product as ProductSchema,
    ProductImage,
    Role,
    User as UserSchema,
)

# ----------------------------------------------------------------------------
# App, Logging and Security Setup
# ----------------------------------------------------------------------------

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("storefront")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days
RESET_TOKEN_EXPIRE_MINUTES = 60

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@shop.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

payment_gateway = StripeGateway()
mail_service = EmailService()


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def doc_to_public(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    # hide sensitive fields
    doc.pop("password_hash", None)
    doc.pop("reset_token_hash", None)
    doc.pop("reset_token_expires", None)
    return doc


def get_db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return database.db


def get_gateway() -> StripeGateway:
    return payment_gateway


def get_mailer() -> EmailService:
    return mail_service


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    uid = carts.to_object_id(payload.get("sub"))
    if uid is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": uid})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user


def require_role(role: Role):
    async def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") != role.value:
            raise HTTPException(status_code=403, detail=f"{role.value.capitalize()} access required")
        return user
    return dependency


get_current_admin = require_role(Role.admin)


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class ProductCreateRequest(ProductSchema):
    pass


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[int] = Field(None, ge=0, le=100)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[ProductImage]] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None


class AddCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartRequest(BaseModel):
    product_id: str
    quantity: int


class RemoveCartRequest(BaseModel):
    product_id: str


class PaymentIntentRequest(BaseModel):
    shipping_address: Address
    billing_address: Address


class CreateOrderRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class AdminUserUpdateRequest(BaseModel):
    name: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

@app.post("/auth/register", response_model=TokenResponse)
def register(body: RegisterRequest, db=Depends(get_db)):
    existing = db["user"].find_one({"email": body.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
    )
    uid = database.create_document("user", user, database=db)
    logger.info("Registered user %s", uid)
    token = create_access_token({"sub": uid})
    return TokenResponse(access_token=token)


@app.post("/auth/login", response_model=TokenResponse)
def login(body: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or not user.get("password_hash") or not verify_password(body.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token)


@app.post("/auth/forgot-password")
def forgot_password(body: ForgotPasswordRequest, db=Depends(get_db), mailer=Depends(get_mailer)):
    # same answer whether or not the address is registered
    response = {"message": "If that email is registered, a reset link has been sent"}
    user = db["user"].find_one({"email": body.email})
    if not user or not user.get("is_active", True):
        return response

    token = secrets.token_urlsafe(32)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "reset_token_hash": hash_reset_token(token),
        "reset_token_expires": datetime.utcnow() + timedelta(minutes=RESET_TOKEN_EXPIRE_MINUTES),
    }})
    try:
        mailer.send_password_reset(user["email"], token, RESET_TOKEN_EXPIRE_MINUTES)
    except MailDeliveryError:
        db["user"].update_one({"_id": user["_id"]}, {"$unset": {"reset_token_hash": "", "reset_token_expires": ""}})
        raise
    logger.info("Password reset requested for user %s", user["_id"])
    return response


@app.post("/auth/reset-password")
def reset_password(body: ResetPasswordRequest, db=Depends(get_db)):
    user = db["user"].find_one({
        "reset_token_hash": hash_reset_token(body.token),
        "reset_token_expires": {"$gt": datetime.utcnow()},
    })
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    db["user"].update_one({"_id": user["_id"]}, {
        "$set": {"password_hash": hash_password(body.password), "updated_at": datetime.utcnow()},
        "$unset": {"reset_token_hash": "", "reset_token_expires": ""},
    })
    logger.info("Password reset for user %s", user["_id"])
    return {"message": "Password reset successful"}


@app.get("/me")
def me(current=Depends(get_current_user)):
    return doc_to_public(current)


@app.put("/me")
def update_me(body: ProfileUpdateRequest, current=Depends(get_current_user), db=Depends(get_db)):
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = datetime.utcnow()
    db["user"].update_one({"_id": current["_id"]}, {"$set": update})
    return doc_to_public(db["user"].find_one({"_id": current["_id"]}))


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@app.get("/products")
def list_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    featured: Optional[bool] = Query(None),
    sort: Optional[str] = Query(None, description="price_asc|price_desc|newest"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db=Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": True}
    if q:
        query["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if featured is not None:
        query["is_featured"] = featured

    total = db["product"].count_documents(query)
    cursor = db["product"].find(query)

    sort_map = {
        "price_asc": ("price", 1),
        "price_desc": ("price", -1),
        "newest": ("created_at", -1),
    }
    if sort and sort in sort_map:
        field, direction = sort_map[sort]
        cursor = cursor.sort(field, direction)

    skip = (page - 1) * limit
    cursor = cursor.skip(skip).limit(limit)

    items = [doc_to_public(x) for x in cursor]
    categories = db["product"].distinct("category")
    return {"items": items, "total": total, "page": page, "limit": limit, "categories": categories}


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    doc = carts.find_product(db, product_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc_to_public(doc)


# ----------------------------------------------------------------------------
# Admin: Product Management
# ----------------------------------------------------------------------------

@app.post("/admin/products", status_code=201)
def admin_create_product(body: ProductCreateRequest, user=Depends(get_current_admin), db=Depends(get_db)):
    pid = database.create_document("product", body, database=db)
    return {"id": pid}


@app.put("/admin/products/{product_id}")
def admin_update_product(product_id: str, body: ProductUpdateRequest, user=Depends(get_current_admin), db=Depends(get_db)):
    oid = carts.to_object_id(product_id)
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = datetime.utcnow()
    res = db["product"].update_one({"_id": oid}, {"$set": update}) if oid else None
    if res is None or res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"updated": True}


@app.delete("/admin/products/{product_id}")
def admin_delete_product(product_id: str, user=Depends(get_current_admin), db=Depends(get_db)):
    oid = carts.to_object_id(product_id)
    res = db["product"].delete_one({"_id": oid}) if oid else None
    if res is None or res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

@app.get("/cart")
def get_cart(current=Depends(get_current_user), db=Depends(get_db)):
    cart = carts.get_or_create_cart(db, str(current["_id"]))
    return carts.describe(db, cart)


@app.get("/cart/count")
def cart_count(current=Depends(get_current_user), db=Depends(get_db)):
    cart = carts.get_cart(db, str(current["_id"]))
    return {"count": cart.get("total_items", 0) if cart else 0}


@app.post("/cart/add")
def add_to_cart(body: AddCartRequest, current=Depends(get_current_user), db=Depends(get_db)):
    product = carts.find_product(db, body.product_id)
    if not product or not product.get("is_active", True):
        raise HTTPException(status_code=404, detail="Product not found")
    cart = carts.get_or_create_cart(db, str(current["_id"]))
    cart = carts.add_item(db, cart, body.product_id, body.quantity)
    return carts.describe(db, cart)


@app.put("/cart/update")
def update_cart(body: UpdateCartRequest, current=Depends(get_current_user), db=Depends(get_db)):
    cart = carts.get_or_create_cart(db, str(current["_id"]))
    cart = carts.update_quantity(db, cart, body.product_id, body.quantity)
    return carts.describe(db, cart)


@app.delete("/cart/remove")
def remove_from_cart(body: RemoveCartRequest, current=Depends(get_current_user), db=Depends(get_db)):
    cart = carts.get_or_create_cart(db, str(current["_id"]))
    cart = carts.remove_item(db, cart, body.product_id)
    return carts.describe(db, cart)


@app.delete("/cart/clear")
def clear_cart(current=Depends(get_current_user), db=Depends(get_db)):
    cart = carts.get_or_create_cart(db, str(current["_id"]))
    cart = carts.clear(db, cart)
    return carts.describe(db, cart)


# ----------------------------------------------------------------------------
# Checkout & Orders
# ----------------------------------------------------------------------------

@app.post("/checkout/intent")
def create_payment_intent(body: PaymentIntentRequest, current=Depends(get_current_user),
                          db=Depends(get_db), gateway=Depends(get_gateway)):
    return checkout.create_payment_intent(db, gateway, str(current["_id"]), body.shipping_address, body.billing_address)


@app.post("/orders", status_code=201)
def create_order(body: CreateOrderRequest, response: Response, current=Depends(get_current_user),
                 db=Depends(get_db), gateway=Depends(get_gateway)):
    order, created = checkout.finalize_order(
        db, gateway, str(current["_id"]), body.payment_intent_id,
        body.shipping_address, body.billing_address, body.payment_method.value,
    )
    if not created:
        response.status_code = 200
        return {"message": "Order already exists for this payment", "order": doc_to_public(order)}
    return {"message": "Order created successfully", "order": doc_to_public(order)}


@app.get("/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    current=Depends(get_current_user),
    db=Depends(get_db),
):
    query: Dict[str, Any] = {"user_id": str(current["_id"])}
    if status:
        query["status"] = status.value
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query, sort=[("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {
        "orders": [doc_to_public(o) for o in cursor],
        "pagination": {
            "currentPage": page,
            "totalPages": -(-total // limit),
            "totalOrders": total,
        },
    }


@app.get("/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), db=Depends(get_db)):
    order = checkout.get_order(db, order_id)
    if order["user_id"] != str(current["_id"]) and current.get("role") != Role.admin.value:
        raise HTTPException(status_code=403, detail="Access denied")
    return doc_to_public(order)


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdateRequest, user=Depends(get_current_admin), db=Depends(get_db)):
    order = checkout.set_status(db, order_id, body.status, body.tracking_number)
    return {"message": "Order status updated successfully", "order": doc_to_public(order)}


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, current=Depends(get_current_user), db=Depends(get_db), gateway=Depends(get_gateway)):
    order = checkout.cancel_order(db, gateway, order_id, str(current["_id"]))
    return {"message": "Order cancelled successfully", "order": doc_to_public(order)}


@app.get("/admin/orders")
def admin_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    user=Depends(get_current_admin),
    db=Depends(get_db),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status.value
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query, sort=[("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {"orders": [doc_to_public(o) for o in cursor], "total": total, "page": page, "limit": limit}


# ----------------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------------

@app.get("/payments/config")
def payment_config(gateway=Depends(get_gateway)):
    return {"publishableKey": gateway.publishable_key}


@app.post("/payments/webhook")
async def stripe_webhook(request: Request, db=Depends(get_db), gateway=Depends(get_gateway)):
    payload = await request.body()
    event = gateway.construct_event(payload, request.headers.get("stripe-signature"))

    event_type = event["type"]
    if event_type == "payment_intent.succeeded":
        intent = intent_from_event_object(event["data"]["object"])
        checkout.handle_payment_succeeded(db, gateway, intent)
    elif event_type == "payment_intent.payment_failed":
        logger.info("Payment failed: %s", event["data"]["object"]["id"])
    else:
        logger.info("Unhandled event type %s", event_type)
    return {"received": True}


# ----------------------------------------------------------------------------
# Admin: Dashboard and Users
# ----------------------------------------------------------------------------

@app.get("/admin/dashboard/stats")
def admin_dashboard_stats(user=Depends(get_current_admin), db=Depends(get_db)):
    return reporting.dashboard_stats(db)


@app.get("/admin/products/stats")
def admin_product_stats(user=Depends(get_current_admin), db=Depends(get_db)):
    return reporting.product_stats(db)


@app.get("/admin/users/stats")
def admin_user_stats(user=Depends(get_current_admin), db=Depends(get_db)):
    return reporting.user_stats(db)


@app.get("/admin/users")
def admin_users(user=Depends(get_current_admin), db=Depends(get_db)):
    cursor = db["user"].find({}, sort=[("created_at", -1)])
    return [doc_to_public(u) for u in cursor]


@app.put("/admin/users/{user_id}")
def admin_update_user(user_id: str, body: AdminUserUpdateRequest, user=Depends(get_current_admin), db=Depends(get_db)):
    oid = carts.to_object_id(user_id)
    update = body.model_dump(exclude_none=True, mode="json")
    update["updated_at"] = datetime.utcnow()
    res = db["user"].update_one({"_id": oid}, {"$set": update}) if oid else None
    if res is None or res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    return doc_to_public(db["user"].find_one({"_id": oid}))


# ----------------------------------------------------------------------------
# Health and Test
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    if database.db is None:
        return {"backend": "ok", "db": "not configured"}
    try:
        collections = database.db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {e}"}


# ----------------------------------------------------------------------------
# Seed Data (idempotent) and Startup Hook
# ----------------------------------------------------------------------------

SAMPLE_PRODUCTS = [
    {
        "name": "Echo Speaker (3rd Gen)",
        "description": "Smart speaker with immersive sound and Alexa.",
        "price": 39.99,
        "discount": 10,
        "category": "electronics",
        "stock": 120,
        "images": [
            {"url": "https://images.unsplash.com/photo-1518445692141-b4bd9a3bf3f0?q=80&w=1200&auto=format&fit=crop", "alt": "Echo Speaker"},
        ],
        "is_featured": True,
    },
    {
        "name": "Noise-Canceling Headphones",
        "description": "Over-ear wireless headphones with active noise cancellation.",
        "price": 89.0,
        "discount": 5,
        "category": "electronics",
        "stock": 80,
        "images": [
            {"url": "https://images.unsplash.com/photo-1518443895914-6bd2e0def5a6?q=80&w=1200&auto=format&fit=crop", "alt": "Headphones"},
        ],
        "is_featured": True,
    },
    {
        "name": "Minimal Backpack",
        "description": "Water-resistant backpack for daily carry.",
        "price": 59.5,
        "category": "accessories",
        "stock": 55,
        "images": [
            {"url": "https://images.unsplash.com/photo-1483985988355-763728e1935b?q=80&w=1200&auto=format&fit=crop", "alt": "Backpack"},
        ],
    },
    {
        "name": "Running Shoes",
        "description": "Breathable, lightweight running shoes for everyday training.",
        "price": 74.99,
        "discount": 15,
        "category": "footwear",
        "stock": 200,
        "images": [
            {"url": "https://images.unsplash.com/photo-1542291026-7eec264c27ff?q=80&w=1200&auto=format&fit=crop", "alt": "Running shoes"},
        ],
    },
]


def seed_data(db):
    # Create admin if not exists
    if not db["user"].find_one({"email": ADMIN_EMAIL}):
        admin = UserSchema(
            name="Admin",
            email=ADMIN_EMAIL,
            password_hash=hash_password(ADMIN_PASSWORD),
            role=Role.admin,
        )
        database.create_document("user", admin, database=db)
        logger.info("Seeded admin user %s", ADMIN_EMAIL)

    # Seed products if collection is empty
    if db["product"].count_documents({}) == 0:
        for p in SAMPLE_PRODUCTS:
            database.create_document("product", ProductSchema(**p), database=db)
        logger.info("Seeded %d sample products", len(SAMPLE_PRODUCTS))


@app.post("/admin/seed")
def trigger_seed(user=Depends(get_current_admin), db=Depends(get_db)):
    seed_data(db)
    return {"seeded": True}


@app.on_event("startup")
def on_startup():
    if database.db is None:
        logger.warning("DATABASE_URL not set; running without a database")
        return
    try:
        database.ensure_indexes()
        seed_data(database.db)
    except PyMongoError as e:
        logger.exception("Startup seeding failed: %s", e)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
