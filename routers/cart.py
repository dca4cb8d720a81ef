from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_by_id, utcnow
from deps import Services, get_services
from errors import InsufficientStock, NotFound, ProductUnavailable
from pricing import current_price
from routers import ok
from schemas import Cart, CartItem
from security import get_current_user

router = APIRouter(prefix="/cart", tags=["cart"])


class CartItemIn(BaseModel):
    productId: str
    quantity: int = Field(1, ge=1)


class QuantityIn(BaseModel):
    quantity: int = Field(..., ge=1)


def get_or_create_cart(db, user_id: str) -> dict:
    cart = db["cart"].find_one({"userId": user_id})
    if cart:
        return cart
    try:
        return create_document(db, "cart", Cart(userId=user_id))
    except DuplicateKeyError:
        return db["cart"].find_one({"userId": user_id})


def _available_product(db, product_id: str, quantity: int) -> dict:
    product = get_by_id(db, "product", product_id)
    if not product or not product.get("isActive", True):
        raise NotFound("Product not found")
    if not product["availability"].get("inStock"):
        raise ProductUnavailable(f"{product['name']} is out of stock")
    if quantity > product["availability"].get("quantity", 0):
        raise InsufficientStock(f"Only {product['availability']['quantity']} of {product['name']} available")
    return product


def describe(db, cart: dict) -> dict:
    """Cart with each line priced at the current price."""
    ids = [item["productId"] for item in cart.get("items", [])]
    products = {p["id"]: p for p in db["product"].find({"id": {"$in": ids}})}
    items = []
    subtotal = 0.0
    for item in cart.get("items", []):
        product = products.get(item["productId"])
        if not product:
            continue
        price = current_price(product, quantity=item["quantity"])
        total = round(price * item["quantity"], 2)
        subtotal += total
        items.append({
            **item,
            "currentPrice": price,
            "total": total,
            "product": {
                "id": product["id"],
                "name": product["name"],
                "images": product.get("images", [])[:1],
                "unit": product["price"]["unit"],
                "available": product.get("isActive", True) and product["availability"].get("inStock", False),
                "stock": product["availability"].get("quantity", 0),
            },
        })
    return {
        "id": cart["id"],
        "items": items,
        "itemsCount": sum(i["quantity"] for i in items),
        "subtotal": round(subtotal, 2),
    }


@router.get("")
def get_cart(user=Depends(get_current_user), services: Services = Depends(get_services)):
    return ok(describe(services.db, get_or_create_cart(services.db, user["id"])))


@router.get("/summary")
def cart_summary(user=Depends(get_current_user), services: Services = Depends(get_services)):
    cart = describe(services.db, get_or_create_cart(services.db, user["id"]))
    return ok({"itemsCount": cart["itemsCount"], "subtotal": cart["subtotal"], "lines": len(cart["items"])})


@router.post("/items")
def add_item(body: CartItemIn, user=Depends(get_current_user), services: Services = Depends(get_services)):
    db = services.db
    cart = get_or_create_cart(db, user["id"])
    existing = next((i for i in cart.get("items", []) if i["productId"] == body.productId), None)
    quantity = body.quantity + (existing["quantity"] if existing else 0)
    product = _available_product(db, body.productId, quantity)

    if existing:
        cart = db["cart"].find_one_and_update(
            {"id": cart["id"], "items.productId": body.productId},
            {"$set": {"items.$.quantity": quantity, "items.$.price": current_price(product, quantity=quantity),
                      "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    else:
        item = CartItem(productId=body.productId, quantity=quantity,
                        price=current_price(product, quantity=quantity), addedAt=utcnow())
        cart = db["cart"].find_one_and_update(
            {"id": cart["id"]},
            {"$push": {"items": item.model_dump()}, "$set": {"updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    return ok(describe(db, cart), "Item added to cart")


@router.put("/items/{product_id}")
def update_item(product_id: str, body: QuantityIn, user=Depends(get_current_user),
                services: Services = Depends(get_services)):
    db = services.db
    cart = get_or_create_cart(db, user["id"])
    if not any(i["productId"] == product_id for i in cart.get("items", [])):
        raise NotFound("Item is not in the cart")
    _available_product(db, product_id, body.quantity)
    cart = db["cart"].find_one_and_update(
        {"id": cart["id"], "items.productId": product_id},
        {"$set": {"items.$.quantity": body.quantity, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return ok(describe(db, cart), "Cart updated")


@router.delete("/items/{product_id}")
def remove_item(product_id: str, user=Depends(get_current_user), services: Services = Depends(get_services)):
    db = services.db
    cart = get_or_create_cart(db, user["id"])
    cart = db["cart"].find_one_and_update(
        {"id": cart["id"]},
        {"$pull": {"items": {"productId": product_id}}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return ok(describe(db, cart), "Item removed")


@router.delete("")
def clear_cart(user=Depends(get_current_user), services: Services = Depends(get_services)):
    db = services.db
    cart = get_or_create_cart(db, user["id"])
    db["cart"].update_one({"id": cart["id"]}, {"$set": {"items": [], "updatedAt": utcnow()}})
    return ok(message="Cart cleared")
