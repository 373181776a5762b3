"""
Read-only aggregations behind the admin dashboard.

Results are a point-in-time snapshot; nothing here writes.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List

from bson import ObjectId

LOW_STOCK_THRESHOLD = 10
MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def _month_start(now: datetime, months_back: int = 0) -> datetime:
    month = now.month - months_back
    year = now.year
    while month < 1:
        month += 12
        year -= 1
    return datetime(year, month, 1)


def _group_count(collection, field: str) -> List[Dict[str, Any]]:
    pipeline = [
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]
    return list(collection.aggregate(pipeline))


def dashboard_stats(db, now: datetime = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    start_of_month = _month_start(now)
    last_30_days = now - timedelta(days=30)

    live_orders = list(db["order"].find({"status": {"$ne": "cancelled"}}))
    total_revenue = sum(o.get("total", 0) for o in live_orders)
    revenue_this_month = sum(o.get("total", 0) for o in live_orders if o.get("created_at") and o["created_at"] >= start_of_month)

    daily: Dict[str, float] = defaultdict(float)
    for o in live_orders:
        created = o.get("created_at")
        if created and created >= last_30_days:
            daily[created.strftime("%Y-%m-%d")] += o.get("total", 0)

    product_ids = {ObjectId(i["product_id"]) for o in live_orders for i in o.get("items", []) if ObjectId.is_valid(i["product_id"])}
    categories = {p["_id"]: p.get("category") for p in db["product"].find({"_id": {"$in": list(product_ids)}}, {"category": 1})}
    by_category: Dict[str, float] = defaultdict(float)
    for o in live_orders:
        for i in o.get("items", []):
            oid = ObjectId(i["product_id"]) if ObjectId.is_valid(i["product_id"]) else None
            category = categories.get(oid)
            if category:
                by_category[category] += i["price"] * i["quantity"]

    return {
        "userStats": {
            "totalUsers": db["user"].count_documents({}),
            "newUsersThisMonth": db["user"].count_documents({"created_at": {"$gte": start_of_month}}),
        },
        "orderStats": {
            "totalOrders": db["order"].count_documents({}),
            "ordersThisMonth": db["order"].count_documents({"created_at": {"$gte": start_of_month}}),
            "orderStatusDistribution": _group_count(db["order"], "status"),
        },
        "revenueStats": {
            "totalRevenue": round(total_revenue, 2),
            "revenueThisMonth": round(revenue_this_month, 2),
            "dailyRevenue": [{"_id": day, "revenue": round(v, 2)} for day, v in sorted(daily.items())],
            "revenueByCategory": sorted(
                ({"_id": c, "revenue": round(v, 2)} for c, v in by_category.items()),
                key=lambda r: r["revenue"], reverse=True,
            ),
        },
        "productStats": {
            "totalProducts": db["product"].count_documents({}),
            "lowStockProducts": db["product"].count_documents({"stock": {"$lt": LOW_STOCK_THRESHOLD}}),
        },
    }


def product_stats(db) -> Dict[str, Any]:
    sold: Dict[str, Dict[str, Any]] = {}
    for o in db["order"].find({}, {"items": 1}):
        for i in o.get("items", []):
            row = sold.setdefault(i["product_id"], {"_id": i["product_id"], "name": i.get("name"),
                                                    "image": i.get("image"), "totalSold": 0, "revenue": 0.0})
            row["totalSold"] += i["quantity"]
            row["revenue"] = round(row["revenue"] + i["price"] * i["quantity"], 2)
    top = sorted(sold.values(), key=lambda r: r["totalSold"], reverse=True)[:10]
    return {
        "topSellingProducts": top,
        "productsByCategory": _group_count(db["product"], "category"),
    }


def user_stats(db, now: datetime = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    since = _month_start(now, 5)
    months: Dict[tuple, int] = defaultdict(int)
    for u in db["user"].find({"created_at": {"$gte": since}}, {"created_at": 1}):
        months[(u["created_at"].year, u["created_at"].month)] += 1

    return {
        "userRegistrationByMonth": [
            {"month": f"{MONTH_NAMES[m - 1]} {y}", "count": c} for (y, m), c in sorted(months.items())
        ],
        "userStatus": [
            {"name": "Active", "value": db["user"].count_documents({"is_active": True})},
            {"name": "Inactive", "value": db["user"].count_documents({"is_active": False})},
        ],
        "usersByRole": _group_count(db["user"], "role"),
    }
