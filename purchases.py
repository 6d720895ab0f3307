"""
Purchase notifications

A buyer reports an off-platform purchase, an admin approves or rejects it.
Approval is the only place stock is decremented, and it does so with a single
conditional update so two approvals can never both take the same units.
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import uploads
from database import create_document, now, object_id
from errors import NotFound, RuleViolation
from schemas import PurchaseNotification, PurchaseNotificationIn

logger = logging.getLogger(__name__)

COLLECTION = "purchasenotification"


def find_listing_by_book(db: Database, title: str, author: str) -> Optional[Dict[str, Any]]:
    return db["listing"].find_one({
        "title": {"$regex": f"^{re.escape(title.strip())}$", "$options": "i"},
        "author": {"$regex": f"^{re.escape(author.strip())}$", "$options": "i"},
    })


def check_availability(db: Database, title: str, author: str, quantity: int) -> Dict[str, Any]:
    """Find the listing a buyer is reporting and make sure the stock covers it."""
    listing = find_listing_by_book(db, title, author)
    if not listing:
        raise NotFound(
            "Book not found in inventory",
            message="Please verify the book title and author match exactly as listed",
        )

    available = listing.get("quantity", 0)
    if available <= 0:
        raise RuleViolation(
            "Book is out of stock",
            message="This book is currently unavailable. Stock quantity is 0.",
            book_title=listing["title"],
            available_stock=0,
        )
    if quantity > available:
        copies = "copy" if available == 1 else "copies"
        raise RuleViolation(
            "Insufficient stock",
            message=f"Only {available} {copies} available. You requested {quantity}.",
            book_title=listing["title"],
            available_stock=available,
            requested_quantity=quantity,
        )
    return listing


def create_notification(db: Database, listing: Dict[str, Any], payload: PurchaseNotificationIn,
                        proof_filename: str) -> PurchaseNotification:
    notification = PurchaseNotification(
        listing_id=str(listing["_id"]),
        book_title=listing["title"],
        book_author=listing["author"],
        quantity=payload.quantity_purchased,
        buyer_name=payload.buyer_name or "Anonymous",
        buyer_email=payload.buyer_email,
        buyer_phone=payload.buyer_phone,
        amount_paid=payload.amount_paid,
        payment_method=payload.payment_method,
        transaction_proof=proof_filename,
        notes=payload.notes,
        stock_before=listing.get("quantity", 0),
    )
    notification_id = create_document(db, COLLECTION, notification)
    logger.info("Purchase notification %s submitted for %r x%d", notification_id, notification.book_title,
                notification.quantity)
    return get_notification(db, notification_id)


def get_notification(db: Database, notification_id: str) -> PurchaseNotification:
    doc = db[COLLECTION].find_one({"_id": object_id(notification_id, "notification id")})
    if not doc:
        raise NotFound("Purchase notification not found")
    return PurchaseNotification.from_mongo(doc)


def _listing_summary(db: Database, listing_id: str) -> Optional[Dict[str, Any]]:
    listing = db["listing"].find_one({"_id": object_id(listing_id, "listing id")})
    if not listing:
        return None
    return {
        "id": str(listing["_id"]),
        "title": listing.get("title"),
        "author": listing.get("author"),
        "price": listing.get("price"),
        "quantity": listing.get("quantity"),
    }


def to_api(db: Database, notification: PurchaseNotification) -> Dict[str, Any]:
    out = notification.to_api()
    out["listing"] = _listing_summary(db, notification.listing_id)
    return out


def list_notifications(db: Database, status: Optional[str] = None, page: int = 1,
                       limit: int = 50) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status

    cursor = db[COLLECTION].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    items = [to_api(db, PurchaseNotification.from_mongo(doc)) for doc in cursor]
    total = db[COLLECTION].count_documents(query)
    pagination = {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}
    return items, pagination


def _already_processed(notification: PurchaseNotification) -> RuleViolation:
    return RuleViolation("Notification has already been processed", current_status=notification.status)


def approve(db: Database, notification_id: str, processed_by: str) -> Tuple[PurchaseNotification, Dict[str, Any]]:
    notification = get_notification(db, notification_id)
    if notification.status != "pending":
        raise _already_processed(notification)

    listing_oid = object_id(notification.listing_id, "listing id")
    quantity = notification.quantity
    listing = db["listing"].find_one_and_update(
        {"_id": listing_oid, "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if listing is None:
        current = db["listing"].find_one({"_id": listing_oid})
        if not current:
            raise NotFound("Book listing not found")
        stock = current.get("quantity", 0)
        raise RuleViolation(
            "Insufficient current stock",
            message=f"Current stock ({stock}) is less than notification quantity ({quantity})",
            current_stock=stock,
            requested_quantity=quantity,
        )

    stamp = now()
    claimed = db[COLLECTION].update_one(
        {"_id": object_id(notification_id), "status": "pending"},
        {"$set": {
            "status": "approved",
            "processed_at": stamp,
            "processed_by": processed_by,
            "stock_after": listing["quantity"],
            "updated_at": stamp,
        }},
    )
    if claimed.modified_count == 0:
        # Lost the race to another admin; give the units back
        db["listing"].update_one({"_id": listing_oid}, {"$inc": {"quantity": quantity}})
        raise _already_processed(get_notification(db, notification_id))

    logger.info("Approved purchase notification %s: %r stock %s -> %s", notification_id, listing["title"],
                listing["quantity"] + quantity, listing["quantity"])
    return get_notification(db, notification_id), listing


def reject(db: Database, notification_id: str, reason: str, processed_by: str) -> PurchaseNotification:
    notification = get_notification(db, notification_id)
    if notification.status != "pending":
        raise _already_processed(notification)

    stamp = now()
    result = db[COLLECTION].update_one(
        {"_id": object_id(notification_id), "status": "pending"},
        {"$set": {
            "status": "rejected",
            "processed_at": stamp,
            "processed_by": processed_by,
            "rejection_reason": reason,
            "updated_at": stamp,
        }},
    )
    if result.modified_count == 0:
        raise _already_processed(get_notification(db, notification_id))

    logger.info("Rejected purchase notification %s: %s", notification_id, reason)
    return get_notification(db, notification_id)


def delete(db: Database, notification_id: str) -> None:
    notification = get_notification(db, notification_id)
    db[COLLECTION].delete_one({"_id": object_id(notification_id)})
    uploads.delete_image(notification.transaction_proof, uploads.PROOF_DIR)
    logger.info("Deleted purchase notification %s (%s)", notification_id, notification.status)
