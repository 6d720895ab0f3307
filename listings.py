"""
Book listings: search, detail, create, delete and admin stock edits.
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import uploads
from database import create_document, now, object_id
from errors import Forbidden, NotFound
from schemas import Listing, ListingIn, SellerContact

logger = logging.getLogger(__name__)


def search_listings(db: Database, search: Optional[str] = None, author: Optional[str] = None,
                    category: Optional[str] = None, city: Optional[str] = None,
                    min_price: Optional[float] = None, max_price: Optional[float] = None,
                    condition: Optional[str] = None, page: int = 1,
                    limit: int = 12) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    filt: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"title": pattern}, {"author": pattern}, {"description": pattern}]
    if author:
        filt["author"] = {"$regex": re.escape(author), "$options": "i"}
    if city:
        filt["city"] = {"$regex": re.escape(city), "$options": "i"}
    if category:
        filt["category"] = category
    if condition:
        filt["condition"] = condition
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond

    cursor = db["listing"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    items = [Listing.from_mongo(doc).to_api() for doc in cursor]
    total = db["listing"].count_documents(filt)
    return items, {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}


def load_listing(db: Database, listing_id: str) -> Listing:
    doc = db["listing"].find_one({"_id": object_id(listing_id, "listing id")})
    if not doc:
        raise NotFound("Listing not found")
    return Listing.from_mongo(doc)


def get_listing(db: Database, listing_id: str) -> Dict[str, Any]:
    listing = load_listing(db, listing_id)
    out = listing.to_api()
    out["seller"] = None
    if ObjectId.is_valid(listing.seller_id):
        owner = db["user"].find_one({"_id": ObjectId(listing.seller_id)}, {"username": 1})
        if owner:
            out["seller"] = {"id": str(owner["_id"]), "username": owner.get("username")}
    return out


def create_listing(db: Database, payload: ListingIn, seller_id: str, images: List[str]) -> Listing:
    listing = Listing(
        title=payload.title,
        author=payload.author,
        description=payload.description,
        condition=payload.condition,
        price=payload.price,
        category=payload.category,
        isbn=payload.isbn,
        images=images,
        city=payload.city,
        quantity=payload.quantity,
        seller_id=seller_id,
        seller_contact=SellerContact(phone=payload.contact_phone, email=payload.contact_email),
        upi_id=payload.upi_id,
    )
    listing_id = create_document(db, "listing", listing)
    logger.info("Listing %s created by %s: %r", listing_id, seller_id, listing.title)
    return load_listing(db, listing_id)


def delete_listing(db: Database, listing_id: str, user: Dict[str, Any]) -> None:
    listing = load_listing(db, listing_id)
    if listing.seller_id != str(user["_id"]) and not user.get("is_admin"):
        raise Forbidden("Not authorized to delete this listing")
    db["listing"].delete_one({"_id": object_id(listing_id)})
    for filename in listing.images:
        uploads.delete_image(filename)
    logger.info("Listing %s deleted by %s", listing_id, user["_id"])


def set_stock(db: Database, listing_id: str, quantity: int, reason: Optional[str], updated_by: str) -> Listing:
    doc = db["listing"].find_one_and_update(
        {"_id": object_id(listing_id, "listing id")},
        {"$set": {
            "quantity": quantity,
            "stock_update_reason": reason or "Admin update",
            "last_updated_by": updated_by,
            "updated_at": now(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFound("Listing not found")
    logger.info("Stock for %s (%r) set to %d by %s", listing_id, doc.get("title"), quantity, updated_by)
    return Listing.from_mongo(doc)


SAMPLE_LISTINGS = [
    {
        "title": "The Great Gatsby",
        "author": "F. Scott Fitzgerald",
        "description": "Classic American novel in excellent condition. A timeless story of love, wealth, and the American Dream.",
        "condition": "good",
        "price": 299,
        "category": "fiction",
        "isbn": "9780743273565",
        "city": "Mumbai",
        "quantity": 3,
    },
    {
        "title": "JavaScript: The Good Parts",
        "author": "Douglas Crockford",
        "description": "Essential reading for JavaScript developers. Covers the best features of the language.",
        "condition": "like-new",
        "price": 450,
        "category": "academic",
        "isbn": "9780596517748",
        "city": "Bangalore",
        "quantity": 2,
    },
    {
        "title": "Introduction to Algorithms",
        "author": "Thomas H. Cormen",
        "description": "Standard algorithms textbook, some highlighting in early chapters.",
        "condition": "fair",
        "price": 650,
        "category": "textbook",
        "isbn": "9780262033848",
        "city": "Delhi",
        "quantity": 1,
    },
]


def seed(db: Database, seller: Dict[str, Any]) -> int:
    if db["listing"].count_documents({}) > 0:
        return 0
    contact = SellerContact(phone="9876543210", email=seller["email"])
    for sample in SAMPLE_LISTINGS:
        listing = Listing(**sample, seller_id=str(seller["_id"]), seller_contact=contact,
                          upi_id=f"{seller['username']}@upi")
        create_document(db, "listing", listing)
    return len(SAMPLE_LISTINGS)
