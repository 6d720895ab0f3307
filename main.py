import os
import time
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, Query, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import ValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import cart as cart_service
import database
import listings as listing_service
import purchases as purchase_service
import uploads
from database import create_document, get_db
from errors import ApiError, Forbidden, NotFound, Unauthorized, ValidationFailed
from schemas import (
    ApproveRequest,
    CartItemIn,
    Category,
    Condition,
    ListingIn,
    LoginRequest,
    NotificationStatus,
    PurchaseNotificationIn,
    RegisterRequest,
    RejectRequest,
    StockUpdateRequest,
    User,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("bookbazaar")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as e:
            logger.warning("Could not create indexes: %s", e)
    yield


# App setup
app = FastAPI(title="BookBazaar API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "1440"))
SESSION_COOKIE = os.getenv("SESSION_COOKIE", "session")
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAILS", "").split(",") if e.strip()}
MAX_LISTING_IMAGES = 5

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


# Error handling
@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail},
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(loc), "message": err.get("msg")})
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code,
                (time.perf_counter() - started) * 1000)
    return response


# Utilities
def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "username": user.get("username"),
        "is_admin": user.get("is_admin", False),
        "exp": issued + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": issued,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Session expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid session")


def get_current_user(request: Request,
                     credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                     db: Database = Depends(get_db)) -> dict:
    token = credentials.credentials if credentials else request.cookies.get(SESSION_COOKIE)
    if not token:
        raise Unauthorized("Not authenticated")
    uid = decode_token(token).get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise Unauthorized("Invalid session")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user or not user.get("is_active", True):
        raise Unauthorized("User not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    # Role comes from the stored user record, never from the token or the client
    if not user.get("is_admin"):
        raise Forbidden("Admin only")
    return user


def user_out(user: dict) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "username": user.get("username"),
        "email": user.get("email"),
        "isAdmin": user.get("is_admin", False),
    }


def start_session(response: Response, user: dict) -> Dict[str, Any]:
    token = create_token(user)
    response.set_cookie(SESSION_COOKIE, token, max_age=JWT_EXPIRES_MIN * 60, httponly=True, samesite="lax")
    return {"token": token, "user": user_out(user)}


def parse_form(model, **values):
    try:
        return model.from_form(**values)
    except ValidationError as e:
        raise RequestValidationError(e.errors())


# Health
@app.get("/")
def root():
    return {"message": "BookBazaar API running"}


@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "database_name": database.DATABASE_NAME if database.db is not None else None,
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "connected"
        except PyMongoError as e:
            response["database"] = f"error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, response: Response, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"$or": [{"email": email}, {"username": payload.username}]}):
        raise ValidationFailed("User with this email or username already exists")
    user = User(
        username=payload.username,
        email=email,
        password_hash=hash_password(payload.password),
        is_admin=email in ADMIN_EMAILS,
    )
    uid = create_document(db, "user", user)
    logger.info("Registered user %s (%s)", payload.username, uid)
    return start_session(response, db["user"].find_one({"_id": ObjectId(uid)}))


@app.post("/auth/login")
def login(payload: LoginRequest, response: Response, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return start_session(response, user)


@app.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"message": "Logout successful"}


@app.get("/auth/me")
def me(user: dict = Depends(get_current_user)):
    return {"user": user_out(user)}


# Listings
@app.get("/listings")
def list_listings(search: Optional[str] = None, author: Optional[str] = None,
                  category: Optional[Category] = None, city: Optional[str] = None,
                  min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
                  max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
                  condition: Optional[Condition] = None,
                  page: int = Query(1, ge=1), limit: int = Query(12, ge=1, le=50),
                  db: Database = Depends(get_db)):
    items, pagination = listing_service.search_listings(
        db, search=search, author=author, category=category, city=city,
        min_price=min_price, max_price=max_price, condition=condition, page=page, limit=limit,
    )
    return {"listings": items, "pagination": pagination}


@app.get("/listings/{listing_id}")
def get_listing(listing_id: str, db: Database = Depends(get_db)):
    return {"listing": listing_service.get_listing(db, listing_id)}


@app.post("/listings", status_code=201)
def create_listing(title: str = Form(""), author: str = Form(""), description: str = Form(""),
                   condition: str = Form(""), price: str = Form(""), category: str = Form(""),
                   city: str = Form(""), isbn: str = Form(""), quantity: str = Form(""),
                   contact_phone: str = Form("", alias="contactPhone"),
                   contact_email: str = Form("", alias="contactEmail"),
                   upi_id: str = Form("", alias="upiId"),
                   images: Optional[List[UploadFile]] = File(None),
                   user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    payload = parse_form(
        ListingIn, title=title, author=author, description=description, condition=condition,
        price=price, category=category, city=city, isbn=isbn, quantity=quantity,
        contact_phone=contact_phone, contact_email=contact_email, upi_id=upi_id,
    )
    files = [f for f in images or [] if f.filename]
    if len(files) > MAX_LISTING_IMAGES:
        raise ValidationFailed(f"At most {MAX_LISTING_IMAGES} images are allowed")

    saved: List[str] = []
    try:
        for upload in files:
            saved.append(uploads.save_image(upload, "listing"))
        listing = listing_service.create_listing(db, payload, str(user["_id"]), saved)
    except Exception:
        for filename in saved:
            uploads.delete_image(filename)
        raise
    return {"message": "Listing created successfully!", "listing": listing.to_api()}


@app.delete("/listings/{listing_id}")
def delete_listing(listing_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    listing_service.delete_listing(db, listing_id, user)
    return {"message": "Listing deleted successfully"}


@app.put("/listings/{listing_id}/stock")
def update_stock(listing_id: str, payload: StockUpdateRequest, admin: dict = Depends(require_admin),
                 db: Database = Depends(get_db)):
    listing = listing_service.set_stock(db, listing_id, payload.quantity, payload.reason, admin["username"])
    return {"success": True, "message": "Stock updated successfully", "listing": listing.to_api()}


@app.get("/uploads/{filename}")
def get_upload(filename: str):
    path = uploads.resolve(filename)
    if not path.is_file():
        raise NotFound("Image not found")
    return FileResponse(path)


# Cart
@app.get("/cart")
def get_cart(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    found = cart_service.read_cart(db, str(user["_id"]))
    if found is None:
        return {"items": [], "totalPrice": 0, "totalItems": 0}
    cart, listings = found
    return cart_service.populate(cart, listings)


@app.post("/cart/add")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = cart_service.add_item(db, str(user["_id"]), item.listing_id, item.quantity)
    return {"message": "Item added to cart", "cart": cart.to_api(), "totalItems": cart.total_items}


@app.put("/cart/update")
def cart_update(item: CartItemIn, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = cart_service.update_item(db, str(user["_id"]), item.listing_id, item.quantity)
    return {"message": "Cart updated", "cart": cart.to_api()}


@app.delete("/cart/remove/{listing_id}")
def cart_remove(listing_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart = cart_service.remove_item(db, str(user["_id"]), listing_id)
    return {"message": "Item removed from cart", "cart": cart.to_api()}


@app.delete("/cart/clear")
def cart_clear(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    cart_service.clear_cart(db, str(user["_id"]))
    return {"message": "Cart cleared", "items": [], "totalPrice": 0, "totalItems": 0}


# Purchase notifications
@app.post("/purchase-notifications", status_code=201)
def submit_purchase_notification(book_title: str = Form("", alias="bookTitle"),
                                 book_author: str = Form("", alias="bookAuthor"),
                                 quantity_purchased: str = Form("", alias="quantityPurchased"),
                                 buyer_name: str = Form("", alias="buyerName"),
                                 buyer_email: str = Form("", alias="buyerEmail"),
                                 buyer_phone: str = Form("", alias="buyerPhone"),
                                 amount_paid: str = Form("", alias="amountPaid"),
                                 payment_method: str = Form("", alias="paymentMethod"),
                                 notes: str = Form(""),
                                 transaction_proof: Optional[UploadFile] = File(None, alias="transactionProof"),
                                 db: Database = Depends(get_db)):
    payload = parse_form(
        PurchaseNotificationIn, book_title=book_title, book_author=book_author,
        quantity_purchased=quantity_purchased, buyer_name=buyer_name, buyer_email=buyer_email,
        buyer_phone=buyer_phone, amount_paid=amount_paid, payment_method=payment_method, notes=notes,
    )
    if transaction_proof is None or not transaction_proof.filename:
        raise ValidationFailed("Transaction proof image is required")

    listing = purchase_service.check_availability(db, payload.book_title, payload.book_author,
                                                  payload.quantity_purchased)
    proof = uploads.save_image(transaction_proof, "proof", uploads.PROOF_DIR)
    try:
        notification = purchase_service.create_notification(db, listing, payload, proof)
    except Exception:
        uploads.delete_image(proof, uploads.PROOF_DIR)
        raise

    return {
        "success": True,
        "message": "Purchase notification submitted successfully",
        "notification": {
            "id": notification.id,
            "bookTitle": notification.book_title,
            "quantity": notification.quantity,
            "status": notification.status,
            "submittedAt": notification.created_at,
        },
    }


@app.get("/purchase-notifications")
def list_purchase_notifications(status: Optional[NotificationStatus] = None,
                                page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
                                admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    items, pagination = purchase_service.list_notifications(db, status=status, page=page, limit=limit)
    return {"success": True, "notifications": items, "pagination": pagination}


@app.get("/purchase-notifications/{notification_id}")
def get_purchase_notification(notification_id: str, admin: dict = Depends(require_admin),
                              db: Database = Depends(get_db)):
    notification = purchase_service.get_notification(db, notification_id)
    return {"success": True, "notification": purchase_service.to_api(db, notification)}


@app.get("/purchase-notifications/{notification_id}/proof")
def get_purchase_proof(notification_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    notification = purchase_service.get_notification(db, notification_id)
    path = uploads.resolve(notification.transaction_proof, uploads.PROOF_DIR)
    if not path.is_file():
        raise NotFound("Transaction proof not found")
    return FileResponse(path)


@app.put("/purchase-notifications/{notification_id}/approve")
def approve_purchase_notification(notification_id: str, payload: Optional[ApproveRequest] = None,
                                  admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    processed_by = (payload.processed_by if payload else None) or admin["username"]
    notification, listing = purchase_service.approve(db, notification_id, processed_by)
    return {
        "success": True,
        "message": "Purchase notification approved and inventory updated",
        "notification": {
            "id": notification.id,
            "status": notification.status,
            "stockBefore": notification.stock_before,
            "stockAfter": notification.stock_after,
        },
        "listing": {"id": str(listing["_id"]), "title": listing["title"], "newStock": listing["quantity"]},
    }


@app.put("/purchase-notifications/{notification_id}/reject")
def reject_purchase_notification(notification_id: str, payload: RejectRequest,
                                 admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    notification = purchase_service.reject(db, notification_id, payload.reason,
                                           payload.processed_by or admin["username"])
    return {
        "success": True,
        "message": "Purchase notification rejected",
        "notification": {
            "id": notification.id,
            "status": notification.status,
            "rejectionReason": notification.rejection_reason,
        },
    }


@app.delete("/purchase-notifications/{notification_id}")
def delete_purchase_notification(notification_id: str, admin: dict = Depends(require_admin),
                                 db: Database = Depends(get_db)):
    purchase_service.delete(db, notification_id)
    return {"success": True, "message": "Purchase notification deleted successfully"}


# Optional: seed sample listings for demo
@app.post("/admin/seed")
def seed_listings(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    count = listing_service.seed(db, admin)
    if not count:
        return {"seeded": False, "message": "Listings already exist"}
    return {"seeded": True, "count": count}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
