import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import cache as cache_mod
from database import create_document, get_by_id, list_many, utcnow
from deps import Services, get_services
from errors import Conflict, NotFound, ValidationError
from routers import ok
from schemas import Category
from security import require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/categories", tags=["categories"])


def slugify(name: str) -> str:
    return re.sub(r"[^\w]+", "-", name.strip().lower(), flags=re.UNICODE).strip("-_")


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    icon: Optional[str] = None
    parent: Optional[str] = None
    sortOrder: int = 0


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    icon: Optional[str] = None
    sortOrder: Optional[int] = None
    isActive: Optional[bool] = None


def _build_tree(categories: list, parent: Optional[str] = None) -> list:
    return [
        {**c, "children": _build_tree(categories, c["id"])}
        for c in categories if c.get("parent") == parent
    ]


@router.get("")
def list_categories(parent: Optional[str] = None, services: Services = Depends(get_services)):
    key = f"categories:list:{parent or 'all'}"
    if services.cache is not None:
        cached = services.cache.get(key)
        if cached is not None:
            return ok(cached)
    query = {"isActive": True}
    if parent:
        query["parent"] = None if parent == "root" else parent
    categories = list_many(services.db, "category", query, sort=[("sortOrder", 1), ("name", 1)])
    body = ok(categories)
    if services.cache is not None:
        services.cache.set(key, body["data"])
    return body


@router.get("/tree")
def category_tree(services: Services = Depends(get_services)):
    categories = [
        {k: v for k, v in c.items() if k != "_id"}
        for c in list_many(services.db, "category", {"isActive": True}, sort=[("sortOrder", 1), ("name", 1)])
    ]
    return ok(_build_tree(categories))


@router.get("/{id_or_slug}")
def get_category(id_or_slug: str, services: Services = Depends(get_services)):
    category = get_by_id(services.db, "category", id_or_slug) or services.db["category"].find_one({"slug": id_or_slug})
    if not category:
        raise NotFound("Category not found")
    children = list_many(services.db, "category", {"parent": category["id"], "isActive": True},
                         sort=[("sortOrder", 1)])
    products = services.db["product"].count_documents({"categoryId": category["id"], "isActive": True})
    return ok({"category": category, "subcategories": children, "productCount": products})


@router.post("", status_code=201)
def create_category(body: CategoryIn, admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    level = 0
    if body.parent:
        parent = get_by_id(services.db, "category", body.parent)
        if not parent:
            raise ValidationError("Parent category not found")
        level = parent.get("level", 0) + 1
    slug = slugify(body.slug or body.name)
    if not slug:
        raise ValidationError("Cannot derive a slug from the category name")
    try:
        category = create_document(services.db, "category", Category(
            **body.model_dump(exclude={"slug"}), slug=slug, level=level,
        ))
    except DuplicateKeyError:
        raise Conflict("A category with this slug already exists")
    cache_mod.invalidate(services.cache, "categories:*")
    return ok(category, "Category created")


@router.put("/{category_id}")
def update_category(category_id: str, body: CategoryUpdateIn, admin=Depends(require_roles("admin")),
                    services: Services = Depends(get_services)):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    if "name" in changes:
        changes["slug"] = slugify(changes["name"])
    changes["updatedAt"] = utcnow()
    try:
        updated = services.db["category"].find_one_and_update(
            {"id": category_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise Conflict("A category with this slug already exists")
    if not updated:
        raise NotFound("Category not found")
    cache_mod.invalidate(services.cache, "categories:*", "products:*")
    return ok(updated, "Category updated")


@router.delete("/{category_id}")
def delete_category(category_id: str, admin=Depends(require_roles("admin")), services: Services = Depends(get_services)):
    if not get_by_id(services.db, "category", category_id):
        raise NotFound("Category not found")
    if services.db["product"].count_documents({"categoryId": category_id}):
        raise ValidationError("Category still has products")
    if services.db["category"].count_documents({"parent": category_id}):
        raise ValidationError("Category still has subcategories")
    services.db["category"].delete_one({"id": category_id})
    cache_mod.invalidate(services.cache, "categories:*")
    logger.info("Category %s deleted by %s", category_id, admin["id"])
    return ok(message="Category deleted")
