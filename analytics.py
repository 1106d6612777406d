"""Read-only sales reporting for the admin dashboard."""
from collections import defaultdict
from datetime import datetime
from typing import Dict, List

from pymongo import DESCENDING
from pymongo.database import Database

import config
from database import as_utc, utcnow
from pricing import round_money
from schemas import OrderStatus

REVENUE_STATUSES = [OrderStatus.paid.value, OrderStatus.shipped.value]
UNCATEGORIZED = "Uncategorized"
MONTHS = 12
TOP_PRODUCTS = 5
RECENT_ORDERS = 5


def last_months(now: datetime, count: int = MONTHS) -> List[str]:
    """Month keys (YYYY-MM), oldest first, ending with the month of ``now``."""
    year, month = now.year, now.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def product_category_ids(product: dict) -> list:
    ids = product.get("category_ids") or []
    if not ids and product.get("category_id"):
        ids = [product["category_id"]]
    return ids


class AnalyticsService:
    def __init__(self, db: Database, low_stock_threshold: int = config.LOW_STOCK_THRESHOLD):
        self.db = db
        self.low_stock_threshold = low_stock_threshold

    def sales_analytics(self) -> dict:
        orders = list(self.db["orders"].find({"status": {"$in": REVENUE_STATUSES}}))
        total_revenue = round_money(sum(o.get("total", 0) for o in orders))

        months = last_months(utcnow())
        monthly: Dict[str, Dict[str, float]] = {m: {"revenue": 0.0, "orders": 0} for m in months}
        for order in orders:
            created = as_utc(order.get("created_at"))
            key = f"{created.year:04d}-{created.month:02d}" if created else None
            if key in monthly:
                monthly[key]["revenue"] = round_money(monthly[key]["revenue"] + order.get("total", 0))
                monthly[key]["orders"] += 1

        product_ids = {i["product_id"] for o in orders for i in o.get("items", [])}
        products = {p["_id"]: p for p in self.db["products"].find({"_id": {"$in": list(product_ids)}})}
        category_names = {c["_id"]: c["name"] for c in self.db["categories"].find({}, {"name": 1})}

        by_category: Dict[str, Dict[str, float]] = defaultdict(lambda: {"revenue": 0.0, "quantity": 0})
        by_product: Dict[str, Dict] = {}
        for order in orders:
            for item in order.get("items", []):
                line = item["price"] * item["qty"]
                names = [
                    category_names.get(cid, UNCATEGORIZED)
                    for cid in product_category_ids(products.get(item["product_id"], {}))
                ] or [UNCATEGORIZED]
                # Multi-category products count towards each of their categories
                for name in dict.fromkeys(names):
                    by_category[name]["revenue"] = round_money(by_category[name]["revenue"] + line)
                    by_category[name]["quantity"] += item["qty"]

                key = str(item["product_id"])
                entry = by_product.setdefault(key, {"product_id": key, "name": item["name"], "quantity": 0, "revenue": 0.0})
                entry["quantity"] += item["qty"]
                entry["revenue"] = round_money(entry["revenue"] + line)

        refunded = list(self.db["orders"].find({"status": OrderStatus.refunded.value}, {"total": 1}))
        return {
            "total_revenue": total_revenue,
            "total_orders": len(orders),
            "average_order_value": round_money(total_revenue / len(orders)) if orders else 0.0,
            "monthly_revenue": [{"month": m, **monthly[m]} for m in months],
            "category_breakdown": sorted(
                ({"category": name, **values} for name, values in by_category.items()),
                key=lambda c: c["revenue"],
                reverse=True,
            ),
            "top_products": sorted(by_product.values(), key=lambda p: (-p["quantity"], p["name"]))[:TOP_PRODUCTS],
            "canceled_orders": self.db["orders"].count_documents({"status": OrderStatus.canceled.value}),
            "refunded_orders": len(refunded),
            "refunded_amount": round_money(sum(o.get("total", 0) for o in refunded)),
        }

    def dashboard_stats(self) -> dict:
        orders = self.db["orders"]
        by_status = {s.value: orders.count_documents({"status": s.value}) for s in OrderStatus}
        revenue = sum(o.get("total", 0) for o in orders.find({"status": {"$in": REVENUE_STATUSES}}, {"total": 1}))
        low_stock = list(
            self.db["products"]
            .find({"stock_qty": {"$gt": 0, "$lte": self.low_stock_threshold}}, {"name": 1, "stock_qty": 1})
            .sort("stock_qty", 1)
        )
        return {
            "total_orders": orders.count_documents({}),
            "orders_by_status": by_status,
            "pending_orders": by_status[OrderStatus.pending.value],
            "total_revenue": round_money(revenue),
            "total_customers": self.db["customers"].count_documents({}),
            "total_products": self.db["products"].count_documents({}),
            "total_categories": self.db["categories"].count_documents({}),
            "low_stock_products": low_stock,
            "out_of_stock_products": self.db["products"].count_documents({"stock_qty": {"$lte": 0}}),
            "recent_orders": list(orders.find().sort("created_at", DESCENDING).limit(RECENT_ORDERS)),
        }
