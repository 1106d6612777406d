"""Category and product catalog."""
import logging
import re
from typing import Iterable, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, to_object_id, utcnow
from errors import BadRequestError, NotFoundError
from schemas import Category, CategoryUpdate, Product, ProductCreate, ProductUpdate
from uploads import UploadService

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = ["Desserts", "Fruit", "Energy", "Tobacco", "Party Mix", "All Products"]
DEFAULT_PAGE_SIZE = 24
MAX_PAGE_SIZE = 200


class CategoryService:
    def __init__(self, db: Database, uploads: UploadService):
        self.collection = db["categories"]
        self.uploads = uploads

    def ensure_default_categories(self) -> None:
        now = utcnow()
        for name in DEFAULT_CATEGORIES:
            self.collection.update_one(
                {"name": name},
                {"$setOnInsert": {"name": name, "created_at": now, "updated_at": now}},
                upsert=True,
            )

    def find_all(self) -> List[dict]:
        return get_documents(self.collection, sort=[("name", ASCENDING)])

    def find_one(self, category_id: str) -> dict:
        oid = to_object_id(category_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if not doc:
            raise NotFoundError("Category not found")
        return doc

    def create(self, payload: Category) -> dict:
        try:
            return create_document(self.collection, payload)
        except DuplicateKeyError:
            raise BadRequestError("Category name already exists")

    def update(self, category_id: str, payload: CategoryUpdate) -> dict:
        return self._set(category_id, payload.model_dump(exclude_unset=True))

    def _set(self, category_id: str, changes: dict) -> dict:
        oid = to_object_id(category_id)
        changes["updated_at"] = utcnow()
        doc = None
        if oid:
            try:
                doc = self.collection.find_one_and_update(
                    {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
                )
            except DuplicateKeyError:
                raise BadRequestError("Category name already exists")
        if not doc:
            raise NotFoundError("Category not found")
        return doc

    def attach_image(self, category_id: str, data: bytes, file_name: str, content_type: str) -> dict:
        self.find_one(category_id)
        uploaded = self.uploads.upload_image(data, file_name, content_type, folder="categories")
        return self._set(category_id, {"category_image_url": uploaded["file_url"]})

    def remove(self, category_id: str) -> dict:
        oid = to_object_id(category_id)
        result = self.collection.delete_one({"_id": oid}) if oid else None
        if not result or result.deleted_count == 0:
            raise NotFoundError("Category not found")
        return {"deleted": True}


class ProductService:
    def __init__(self, db: Database, uploads: UploadService):
        self.collection = db["products"]
        self.categories = db["categories"]
        self.uploads = uploads

    def _resolve_category_ids(self, ids: Iterable[Optional[str]]) -> list:
        unique = list(dict.fromkeys(i for i in ids if i))
        object_ids = [to_object_id(i) for i in unique]
        if any(oid is None for oid in object_ids):
            raise BadRequestError("One or more categoryIds do not exist")
        if object_ids:
            found = self.categories.count_documents({"_id": {"$in": object_ids}})
            if found != len(object_ids):
                raise BadRequestError("One or more categoryIds do not exist")
        return object_ids

    def create(self, payload: ProductCreate) -> dict:
        category_ids = self._resolve_category_ids([payload.category_id] + list(payload.category_ids or []))
        product = Product(**payload.model_dump(exclude={"category_id", "category_ids"}))
        doc = product.model_dump()
        doc["category_ids"] = category_ids
        # Backward-compatible single field
        doc["category_id"] = category_ids[0] if category_ids else None
        created = create_document(self.collection, doc)
        logger.info("Created product %s (%s)", created["_id"], created["name"])
        return created

    def find_all(self, q: Optional[str] = None, category_id: Optional[str] = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> dict:
        query: dict = {}
        if category_id:
            oid = to_object_id(category_id)
            if not oid:
                raise BadRequestError("Invalid categoryId")
            query["$or"] = [{"category_id": oid}, {"category_ids": oid}]
        if q:
            query["name"] = {"$regex": re.escape(q.strip()), "$options": "i"}

        limit = max(1, min(MAX_PAGE_SIZE, limit))
        page = max(1, page)
        items = list(
            self.collection.find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
        )
        return {"items": items, "page": page, "limit": limit, "total": self.collection.count_documents(query)}

    def find_one(self, product_id: str) -> dict:
        oid = to_object_id(product_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if not doc:
            raise NotFoundError("Product not found")
        return doc

    def update(self, product_id: str, payload: ProductUpdate) -> dict:
        changes = payload.model_dump(exclude_unset=True)
        category_ids = changes.pop("category_ids", None)
        has_category_id = "category_id" in changes
        category_id = changes.pop("category_id", None)

        # category_ids replaces the list; a lone category_id replaces it with one entry or clears it
        if category_ids is not None:
            next_ids: Optional[list] = category_ids
        elif has_category_id:
            next_ids = [category_id] if category_id else []
        else:
            next_ids = None

        if next_ids is not None:
            resolved = self._resolve_category_ids(next_ids)
            changes["category_ids"] = resolved
            changes["category_id"] = resolved[0] if resolved else None

        return self._set(product_id, changes)

    def _set(self, product_id: str, changes: dict) -> dict:
        oid = to_object_id(product_id)
        changes["updated_at"] = utcnow()
        doc = None
        if oid:
            doc = self.collection.find_one_and_update(
                {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        if not doc:
            raise NotFoundError("Product not found")
        return doc

    def attach_image(self, product_id: str, data: bytes, file_name: str, content_type: str) -> dict:
        self.find_one(product_id)
        uploaded = self.uploads.upload_image(data, file_name, content_type, folder="products")
        return self._set(product_id, {"product_image_url": uploaded["file_url"]})

    def remove(self, product_id: str) -> dict:
        oid = to_object_id(product_id)
        result = self.collection.delete_one({"_id": oid}) if oid else None
        if not result or result.deleted_count == 0:
            raise NotFoundError("Product not found")
        return {"deleted": True}
