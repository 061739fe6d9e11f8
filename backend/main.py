import logging
from contextlib import asynccontextmanager
from typing import Dict, Literal, Optional
from urllib.parse import urlencode

from fastapi import Cookie, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

import accounts
import cart as carts
import catalog
import config
import database as database_module
import google
import orders
import payments
import sellers
from auth import create_token, get_current_user, public_user, require_admin, require_customer, require_seller
from database import get_db, serialize_doc, to_object_id
from errors import MarketError, NotFound
from gateways import get_gateways
from schemas import OrderStatus, PaymentMethod, PaymentStatus, ShippingAddress, ShippingStatus

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("marketplace")

GOOGLE_NONCE_COOKIE = "google_oauth_nonce"


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database_module.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; running without a database")
    else:
        database_module.ensure_indexes(database_module.db)
        accounts.ensure_admin(database_module.db)
    yield


app = FastAPI(title="Ku-isoko Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketError)
def handle_market_error(request: Request, exc: MarketError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code, **exc.extra})


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"detail": problems or "Invalid request", "code": "VALIDATION"})


def page_params(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)) -> Dict[str, int]:
    return {"page": page, "limit": limit}


def serialize_page(result: dict, key: str) -> dict:
    body = {k: v for k, v in result.items() if k != "items"}
    body[key] = [serialize_doc(d) for d in result["items"]]
    return body


@app.get("/")
def root():
    return {"status": "ok", "service": "Ku-isoko Backend"}


@app.get("/health")
def health():
    _db = database_module.db
    ok = _db is not None
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
    }
    if ok:
        try:
            response["collections"] = _db.list_collection_names()[:10]
            response["database"] = "connected"
        except Exception as e:
            response["database"] = f"error: {str(e)[:50]}"
    return response


# ========== AUTH ==========
class SignupPayload(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password: str
    phone: Optional[str] = None
    role: Literal["customer", "seller"] = "customer"
    store_name: Optional[str] = Field(None, min_length=3, max_length=100)
    store_description: Optional[str] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class OtpPayload(BaseModel):
    email: EmailStr
    code: str


class EmailPayload(BaseModel):
    email: EmailStr


class ResetPasswordPayload(BaseModel):
    email: EmailStr
    code: str
    new_password: str


@app.post("/api/auth/signup", status_code=201)
def signup(body: SignupPayload, db: Database = Depends(get_db)):
    user = accounts.signup(db, body.name, body.email, body.password, phone=body.phone, role=body.role,
                           store_name=body.store_name, store_description=body.store_description)
    return {
        "message": "Registration successful. Please check your email for the verification OTP.",
        "user": public_user(user),
    }


@app.post("/api/auth/login")
def login(body: LoginPayload, db: Database = Depends(get_db)):
    result = accounts.login(db, body.email, body.password)
    return {"message": "Credentials valid. Please check your email for the login OTP.", **result}


@app.post("/api/auth/verify-otp")
def verify_otp(body: OtpPayload, db: Database = Depends(get_db)):
    result = accounts.complete_otp(db, body.email, body.code)
    return {"message": "OTP verified successfully.", **result}


@app.post("/api/auth/resend-otp")
def resend_otp(body: EmailPayload, db: Database = Depends(get_db)):
    accounts.resend_otp(db, body.email)
    return {"message": "New OTP sent to your email."}


@app.post("/api/auth/forgot-password")
def forgot_password(body: EmailPayload, db: Database = Depends(get_db)):
    accounts.forgot_password(db, body.email)
    return {"message": f"OTP sent to your email. It will expire in {config.OTP_TTL_MINUTES} minutes."}


@app.post("/api/auth/reset-password")
def reset_password(body: ResetPasswordPayload, db: Database = Depends(get_db)):
    accounts.reset_password(db, body.email, body.code, body.new_password)
    return {"message": "Password reset successfully. You can now log in with your new password."}


@app.get("/api/auth/me")
def me(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    profile = sellers.get_profile_for_user(db, str(user["_id"]))
    return {"user": public_user(user), "seller_profile": serialize_doc(profile)}


@app.get("/api/auth/google")
def google_login(role: Literal["customer", "seller"] = "customer"):
    state, nonce = google.make_state(role)
    response = RedirectResponse(google.authorization_url(state=state))
    response.set_cookie(GOOGLE_NONCE_COOKIE, nonce, max_age=google.STATE_TTL_MINUTES * 60, httponly=True,
                        samesite="lax", secure=config.GOOGLE_CALLBACK_URL.startswith("https"))
    return response


@app.get("/api/auth/google/callback")
def google_callback(code: str, state: Optional[str] = None,
                    nonce: Optional[str] = Cookie(None, alias=GOOGLE_NONCE_COOKIE),
                    db: Database = Depends(get_db)):
    requested_role = google.read_state(state, nonce)
    profile = google.fetch_profile(code)
    resolved = accounts.resolve_google_account(db, requested_role=requested_role, **profile)
    user = resolved.user
    token = create_token(str(user["_id"]), user["role"])
    query = urlencode({"token": token, "role": user["role"], "outcome": resolved.outcome.value})
    response = RedirectResponse(f"{config.FRONTEND_URL}/auth/google/success?{query}")
    response.delete_cookie(GOOGLE_NONCE_COOKIE)
    return response


# ========== USERS (admin) ==========
class RolePayload(BaseModel):
    role: Literal["customer", "seller", "admin"]


@app.get("/api/users")
def list_users(role: Optional[str] = None, status: Optional[Literal["active", "inactive"]] = None,
               paging: dict = Depends(page_params), admin: dict = Depends(require_admin),
               db: Database = Depends(get_db)):
    filt = {}
    if role:
        filt["role"] = role
    if status:
        filt["is_active"] = status == "active"
    result = database_module.paginate(db, "user", filt, paging["page"], paging["limit"])
    return {"users": [public_user(u) for u in result["items"]], "pagination": result["pagination"]}


@app.get("/api/users/{user_id}")
def get_user(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise NotFound("User not found")
    user = sellers.reconcile_seller_role(db, user)
    profile = sellers.get_profile_for_user(db, user_id)
    return {"user": public_user(user), "seller_profile": serialize_doc(profile)}


@app.put("/api/users/{user_id}/role")
def update_user_role(user_id: str, body: RolePayload, admin: dict = Depends(require_admin),
                     db: Database = Depends(get_db)):
    user = sellers.set_user_role(db, user_id, body.role)
    return {"message": f"User role updated to {body.role}", "user": public_user(user)}


@app.put("/api/users/{user_id}/toggle-active")
def toggle_user_active(user_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise NotFound("User not found")
    active = not user.get("is_active", True)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": active}})
    user["is_active"] = active
    return {"message": f"User {'activated' if active else 'deactivated'} successfully", "user": public_user(user)}


# ========== SELLERS ==========
class SellerStatusPayload(BaseModel):
    status: Literal["pending", "active", "blocked"]


class SellerProfilePayload(BaseModel):
    store_name: Optional[str] = Field(None, min_length=3, max_length=100)
    store_description: Optional[str] = Field(None, max_length=1000)
    phone: Optional[str] = None
    logo_url: Optional[str] = None


class SellerRequestPayload(BaseModel):
    store_name: str = Field(..., min_length=3, max_length=100)
    store_description: str = ""
    phone: str = Field(..., min_length=1)


@app.get("/api/sellers")
def list_sellers(status: Optional[str] = None, paging: dict = Depends(page_params),
                 db: Database = Depends(get_db)):
    result = sellers.list_sellers(db, status, paging["page"], paging["limit"])
    return serialize_page(result, "sellers")


@app.get("/api/sellers/profile/me")
def my_seller_profile(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"seller": serialize_doc(sellers.get_profile_for_user(db, str(user["_id"])))}


@app.put("/api/sellers/profile")
def update_seller_profile(body: SellerProfilePayload, user: dict = Depends(require_seller),
                          db: Database = Depends(get_db)):
    profile = sellers.update_own_profile(db, str(user["_id"]), body.model_dump())
    return {"message": "Seller profile updated successfully", "seller": serialize_doc(profile)}


@app.post("/api/sellers/request-upgrade", status_code=201)
def request_seller_upgrade(body: SellerRequestPayload, user: dict = Depends(get_current_user),
                           db: Database = Depends(get_db)):
    profile = sellers.request_upgrade(db, user, body.store_name, body.store_description, body.phone)
    return {"message": "Seller request submitted successfully and is pending approval.",
            "seller": serialize_doc(profile)}


@app.get("/api/sellers/{profile_id}")
def get_seller(profile_id: str, db: Database = Depends(get_db)):
    return {"seller": serialize_doc(sellers.get_profile(db, profile_id))}


@app.put("/api/sellers/{profile_id}/status")
def update_seller_status(profile_id: str, body: SellerStatusPayload, admin: dict = Depends(require_admin),
                         db: Database = Depends(get_db)):
    profile = sellers.set_seller_status(db, profile_id, body.status)
    return {"message": f"Seller status updated to {body.status}", "seller": serialize_doc(profile)}


# ========== PRODUCTS ==========
class ProductPayload(BaseModel):
    name: str = Field(..., min_length=3, max_length=200)
    description: str = Field(..., min_length=10, max_length=5000)
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    category: str = Field(..., min_length=1)
    image_url: str = Field(..., min_length=1)


class ProductUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=200)
    description: Optional[str] = Field(None, min_length=10, max_length=5000)
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    image_url: Optional[str] = None


@app.get("/api/products")
def list_products(category: Optional[str] = None, seller_id: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  search: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(12, ge=1, le=100),
                  db: Database = Depends(get_db)):
    result = catalog.list_products(db, page, limit, category=category, seller_id=seller_id,
                                   min_price=min_price, max_price=max_price, search=search)
    return serialize_page(result, "products")


@app.post("/api/products", status_code=201)
def create_product(body: ProductPayload, user: dict = Depends(require_seller), db: Database = Depends(get_db)):
    product = catalog.create_product(db, user, body.model_dump())
    return {"message": "Product created successfully", "product": serialize_doc(product)}


@app.get("/api/products/my-products")
def my_products(paging: dict = Depends(page_params), user: dict = Depends(require_seller),
                db: Database = Depends(get_db)):
    result = database_module.paginate(db, "product", {"seller_id": str(user["_id"])}, paging["page"], paging["limit"])
    return serialize_page(result, "products")


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = catalog.get_product(db, product_id)
    profile = sellers.get_profile_for_user(db, product["seller_id"]) or {}
    seller = {k: profile.get(k) for k in ("store_name", "store_description", "logo_url")}
    return {"product": serialize_doc(product), "seller": seller}


@app.get("/api/products/{product_id}/related")
def related_products(product_id: str, db: Database = Depends(get_db)):
    return {"related_products": [serialize_doc(p) for p in catalog.related_products(db, product_id)]}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdatePayload, user: dict = Depends(require_seller),
                   db: Database = Depends(get_db)):
    product = catalog.update_product(db, product_id, user, body.model_dump())
    return {"message": "Product updated successfully", "product": serialize_doc(product)}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(require_seller), db: Database = Depends(get_db)):
    catalog.delete_product(db, product_id, user)
    return {"message": "Product deleted successfully"}


# ========== REVIEWS ==========
class ReviewPayload(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


class ReviewUpdatePayload(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


@app.get("/api/reviews/products/{product_id}")
def product_reviews(product_id: str, paging: dict = Depends(page_params), db: Database = Depends(get_db)):
    result = catalog.list_reviews(db, product_id, paging["page"], paging["limit"])
    return serialize_page(result, "reviews")


@app.post("/api/reviews/products/{product_id}", status_code=201)
def create_review(product_id: str, body: ReviewPayload, user: dict = Depends(require_customer),
                  db: Database = Depends(get_db)):
    review = catalog.create_review(db, product_id, user, body.rating, body.comment)
    return {"message": "Review created successfully", "review": serialize_doc(review)}


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, body: ReviewUpdatePayload, user: dict = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    review = catalog.update_review(db, review_id, user, body.rating, body.comment)
    return {"message": "Review updated successfully", "review": serialize_doc(review)}


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    catalog.delete_review(db, review_id, user)
    return {"message": "Review deleted successfully"}


# ========== CART ==========
class CartItemPayload(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartQuantityPayload(BaseModel):
    quantity: int = Field(..., ge=0)


def cart_response(cart: dict, message: Optional[str] = None) -> dict:
    body = {"cart": serialize_doc(cart), "total": carts.cart_total(cart)}
    if message:
        body["message"] = message
    return body


@app.get("/api/cart")
def get_cart(user: dict = Depends(require_customer), db: Database = Depends(get_db)):
    return cart_response(carts.get_cart(db, str(user["_id"])))


@app.post("/api/cart")
def add_to_cart(body: CartItemPayload, user: dict = Depends(require_customer), db: Database = Depends(get_db)):
    return cart_response(carts.add_item(db, str(user["_id"]), body.product_id, body.quantity), "Item added to cart")


@app.put("/api/cart/{product_id}")
def update_cart_item(product_id: str, body: CartQuantityPayload, user: dict = Depends(require_customer),
                     db: Database = Depends(get_db)):
    cart = carts.update_quantity(db, str(user["_id"]), product_id, body.quantity)
    return cart_response(cart, "Item removed from cart" if body.quantity == 0 else "Cart updated")


@app.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, user: dict = Depends(require_customer), db: Database = Depends(get_db)):
    return cart_response(carts.remove_item(db, str(user["_id"]), product_id), "Item removed from cart")


@app.delete("/api/cart")
def clear_cart(user: dict = Depends(require_customer), db: Database = Depends(get_db)):
    return cart_response(carts.clear_cart(db, str(user["_id"])), "Cart cleared")


# ========== ORDERS ==========
class CreateOrderPayload(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod


class OrderStatusPayload(BaseModel):
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    shipping_status: Optional[ShippingStatus] = None


@app.post("/api/orders", status_code=201)
def create_order(body: CreateOrderPayload, user: dict = Depends(require_customer), db: Database = Depends(get_db)):
    order = orders.create_order(db, str(user["_id"]), body.shipping_address, body.payment_method)
    return {"message": "Order created successfully", "order": serialize_doc(order)}


@app.get("/api/orders/my-orders")
def my_orders(paging: dict = Depends(page_params), user: dict = Depends(require_customer),
              db: Database = Depends(get_db)):
    return serialize_page(orders.my_orders(db, str(user["_id"]), paging["page"], paging["limit"]), "orders")


@app.get("/api/orders/seller-orders")
def seller_orders(paging: dict = Depends(page_params), user: dict = Depends(require_seller),
                  db: Database = Depends(get_db)):
    return serialize_page(orders.seller_orders(db, str(user["_id"]), paging["page"], paging["limit"]), "orders")


@app.get("/api/orders")
def all_orders(status: Optional[str] = None, payment_status: Optional[str] = None,
               paging: dict = Depends(page_params), admin: dict = Depends(require_admin),
               db: Database = Depends(get_db)):
    result = orders.all_orders(db, paging["page"], paging["limit"], order_status=status,
                               payment_status=payment_status)
    return serialize_page(result, "orders")


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"order": serialize_doc(orders.get_order_for(db, order_id, user))}


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusPayload, admin: dict = Depends(require_admin),
                        db: Database = Depends(get_db)):
    order = orders.update_status(db, order_id, **body.model_dump())
    return {"message": "Order status updated successfully", "order": serialize_doc(order)}


# ========== PAYMENTS ==========
class MoMoInitiatePayload(BaseModel):
    order_id: str
    phone: str = Field(..., min_length=1)


class OrderRefPayload(BaseModel):
    order_id: str


def verification_response(result: payments.VerificationResult) -> dict:
    if result.paid:
        return {"success": True, "message": "Payment verified and stock updated successfully",
                "order": serialize_doc(result.order)}
    return {"success": False, "message": "Payment not completed", "status": result.provider_status}


@app.post("/api/payments/momo/initiate")
def initiate_momo(body: MoMoInitiatePayload, user: dict = Depends(require_customer),
                  db: Database = Depends(get_db), gateways: dict = Depends(get_gateways)):
    order, initiation = payments.initiate_payment(db, gateways["momo"], body.order_id, user, phone=body.phone)
    return {
        "message": "MoMo payment initiated. Please check your phone to confirm.",
        "transaction_id": initiation.transaction_reference,
        "provider_state": initiation.provider_state,
        "order_id": str(order["_id"]),
    }


@app.post("/api/payments/momo/verify")
def verify_momo(body: OrderRefPayload, user: dict = Depends(require_customer),
                db: Database = Depends(get_db), gateways: dict = Depends(get_gateways)):
    return verification_response(payments.verify_payment(db, gateways["momo"], body.order_id, user))


@app.post("/api/payments/stripe/initiate")
def initiate_stripe(body: OrderRefPayload, user: dict = Depends(require_customer),
                    db: Database = Depends(get_db), gateways: dict = Depends(get_gateways)):
    order, initiation = payments.initiate_payment(db, gateways["stripe"], body.order_id, user)
    return {
        "message": "Stripe payment initiated",
        "client_secret": initiation.client_secret,
        "payment_intent_id": initiation.transaction_reference,
        "provider_state": initiation.provider_state,
        "order_id": str(order["_id"]),
    }


@app.post("/api/payments/stripe/verify")
def verify_stripe(body: OrderRefPayload, user: dict = Depends(require_customer),
                  db: Database = Depends(get_db), gateways: dict = Depends(get_gateways)):
    return verification_response(payments.verify_payment(db, gateways["stripe"], body.order_id, user))


@app.post("/api/payments/stripe/webhook")
async def stripe_webhook(request: Request, db: Database = Depends(get_db),
                         gateways: dict = Depends(get_gateways)):
    payload = await request.body()
    event = await run_in_threadpool(gateways["stripe"].parse_event, payload, request.headers.get("stripe-signature"))
    await run_in_threadpool(payments.handle_stripe_event, db, event)
    return {"received": True}


@app.get("/api/payments/{order_id}/status")
def get_payment_status(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return payments.payment_status(db, order_id, user)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
