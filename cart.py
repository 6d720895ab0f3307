"""
Cart reconciliation

One cart per user, created on the first add. Every mutation recomputes the
totals and writes the whole cart document back. Reads re-check each line
against the current listing stock and persist any correction.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now, object_id
from errors import NotFound, RuleViolation, ValidationFailed
from schemas import Cart, CartItem

logger = logging.getLogger(__name__)

LISTING_SUMMARY_FIELDS = ("title", "author", "price", "images", "city", "condition", "quantity")


def recalculate(cart: Cart) -> Cart:
    for item in cart.items:
        item.line_total = round(item.quantity * item.unit_price, 2)
    cart.total_price = round(sum(item.line_total for item in cart.items), 2)
    cart.total_items = sum(item.quantity for item in cart.items)
    return cart


def load_cart(db: Database, user_id: str) -> Optional[Cart]:
    doc = db["cart"].find_one({"user_id": user_id})
    return Cart.from_mongo(doc) if doc else None


def save_cart(db: Database, cart: Cart) -> Cart:
    recalculate(cart)
    stamp = now()
    doc = db["cart"].find_one_and_update(
        {"user_id": cart.user_id},
        {"$set": {**cart.to_mongo(), "updated_at": stamp}, "$setOnInsert": {"created_at": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return Cart.from_mongo(doc)


def find_listing(db: Database, listing_id: str) -> Dict[str, Any]:
    listing = db["listing"].find_one({"_id": object_id(listing_id, "listing id")})
    if not listing:
        raise NotFound("Book not found")
    return listing


def _normalize(listing_id: str) -> str:
    # ObjectId hex is case-insensitive; lines are keyed on the canonical form
    return str(ObjectId(listing_id)) if ObjectId.is_valid(listing_id) else listing_id


def _find_line(cart: Cart, listing_id: str) -> Optional[CartItem]:
    for item in cart.items:
        if item.listing_id == listing_id:
            return item
    return None


def add_item(db: Database, user_id: str, listing_id: str, quantity: int) -> Cart:
    if quantity <= 0:
        raise ValidationFailed("Quantity must be at least 1")
    listing = find_listing(db, listing_id)
    listing_id = str(listing["_id"])
    stock = listing.get("quantity", 0)

    if stock <= 0:
        raise RuleViolation(
            "Book is out of stock",
            message=f"{listing['title']} is currently unavailable. Stock quantity is 0.",
            available_quantity=0,
        )
    if quantity > stock:
        raise RuleViolation(
            f"Only {stock} unit(s) available. Cannot add {quantity} to cart.",
            available_quantity=stock,
        )

    cart = load_cart(db, user_id) or Cart(user_id=user_id)
    line = _find_line(cart, listing_id)
    if line is None:
        cart.items.append(CartItem(listing_id=listing_id, quantity=quantity, unit_price=listing["price"]))
    else:
        new_quantity = line.quantity + quantity
        if new_quantity > stock:
            raise RuleViolation(
                f"Only {stock} unit(s) available. Current cart has {line.quantity}, cannot add {quantity} more.",
                available_quantity=stock,
                current_quantity=line.quantity,
            )
        line.quantity = new_quantity
    return save_cart(db, cart)


def update_item(db: Database, user_id: str, listing_id: str, quantity: int) -> Cart:
    listing_id = _normalize(listing_id)
    cart = load_cart(db, user_id)
    if cart is None:
        raise NotFound("Cart not found")
    line = _find_line(cart, listing_id)
    if line is None:
        raise NotFound("Item not found in cart")

    if quantity <= 0:
        cart.items.remove(line)
        return save_cart(db, cart)

    listing = find_listing(db, listing_id)
    stock = listing.get("quantity", 0)
    if stock <= 0:
        cart.items.remove(line)
        cart = save_cart(db, cart)
        raise RuleViolation(
            f"{listing['title']} is now out of stock and has been removed from your cart.",
            available_quantity=0,
            cart=cart.to_api(),
        )
    if quantity > stock:
        raise RuleViolation(f"Only {stock} unit(s) available for this book.", available_quantity=stock)

    line.quantity = quantity
    return save_cart(db, cart)


def remove_item(db: Database, user_id: str, listing_id: str) -> Cart:
    listing_id = _normalize(listing_id)
    cart = load_cart(db, user_id)
    if cart is None:
        raise NotFound("Cart not found")
    cart.items = [item for item in cart.items if item.listing_id != listing_id]
    return save_cart(db, cart)


def clear_cart(db: Database, user_id: str) -> Cart:
    cart = load_cart(db, user_id)
    if cart is None:
        return recalculate(Cart(user_id=user_id))
    cart.items = []
    return save_cart(db, cart)


def read_cart(db: Database, user_id: str) -> Optional[Tuple[Cart, Dict[str, Dict[str, Any]]]]:
    """Return the cart with stale lines dropped or clamped, plus the listings it references.

    Lines whose listing is gone or has no stock are removed; lines asking for
    more than the current stock are clamped down to it.
    """
    cart = load_cart(db, user_id)
    if cart is None:
        return None

    ids = [ObjectId(item.listing_id) for item in cart.items if ObjectId.is_valid(item.listing_id)]
    listings = {str(doc["_id"]): doc for doc in db["listing"].find({"_id": {"$in": ids}})}

    kept = []
    changed = False
    for item in cart.items:
        listing = listings.get(item.listing_id)
        stock = listing.get("quantity", 0) if listing else 0
        if stock <= 0:
            logger.info("Removing unavailable listing %s from cart of user %s", item.listing_id, user_id)
            changed = True
            continue
        if item.quantity > stock:
            logger.info("Adjusting quantity of %s for user %s: %d -> %d", item.listing_id, user_id, item.quantity, stock)
            item.quantity = stock
            changed = True
        kept.append(item)

    if changed:
        cart.items = kept
        cart = save_cart(db, cart)
    return cart, listings


def populate(cart: Cart, listings: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    out = cart.to_api()
    for item in out["items"]:
        listing = listings.get(item["listingId"])
        item["listing"] = None
        if listing:
            item["listing"] = {"id": str(listing["_id"]), **{f: listing.get(f) for f in LISTING_SUMMARY_FIELDS}}
    return out
