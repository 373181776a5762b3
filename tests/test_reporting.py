from datetime import datetime, timedelta

import reporting
from conftest import auth_headers, make_product, make_user


def add_order(db, product_id, total, status="processing", created_at=None, quantity=1, price=None):
    db["order"].insert_one({
        "user_id": "u1",
        "order_number": f"ORD-{db['order'].count_documents({})}",
        "items": [{"product_id": product_id, "quantity": quantity, "price": price or total, "name": "P", "image": None}],
        "total": total,
        "status": status,
        "created_at": created_at or datetime.utcnow(),
    })


def test_dashboard_excludes_cancelled_revenue(db):
    now = datetime(2026, 10, 15, 12, 0)
    lamp = make_product(db, name="Lamp", category="home", stock=3)
    phone = make_product(db, name="Phone", category="electronics", stock=50)
    add_order(db, lamp, 100, created_at=now - timedelta(days=1))
    add_order(db, phone, 40, created_at=now - timedelta(days=40))
    add_order(db, phone, 999, status="cancelled", created_at=now)

    stats = reporting.dashboard_stats(db, now=now)

    assert stats["revenueStats"]["totalRevenue"] == 140
    assert stats["revenueStats"]["revenueThisMonth"] == 100
    assert stats["revenueStats"]["dailyRevenue"] == [{"_id": "2026-10-14", "revenue": 100}]
    assert stats["revenueStats"]["revenueByCategory"] == [
        {"_id": "home", "revenue": 100},
        {"_id": "electronics", "revenue": 40},
    ]
    assert stats["orderStats"]["totalOrders"] == 3
    assert stats["productStats"] == {"totalProducts": 2, "lowStockProducts": 1}
    distribution = {row["_id"]: row["count"] for row in stats["orderStats"]["orderStatusDistribution"]}
    assert distribution == {"processing": 2, "cancelled": 1}


def test_product_stats_ranks_by_quantity(db):
    a = make_product(db, name="A", category="home")
    b = make_product(db, name="B", category="home")
    add_order(db, a, 10, quantity=1, price=10)
    add_order(db, b, 15, quantity=3, price=5)

    stats = reporting.product_stats(db)

    assert [row["_id"] for row in stats["topSellingProducts"]] == [b, a]
    assert stats["topSellingProducts"][0]["revenue"] == 15
    assert stats["productsByCategory"] == [{"_id": "home", "count": 2}]


def test_user_stats(db):
    make_user(db, email="a@example.com")
    make_user(db, email="b@example.com", role="admin", is_active=False)

    stats = reporting.user_stats(db)

    assert {"name": "Inactive", "value": 1} in stats["userStatus"]
    assert sum(row["count"] for row in stats["userRegistrationByMonth"]) == 2
    assert {row["_id"]: row["count"] for row in stats["usersByRole"]} == {"user": 1, "admin": 1}


def test_dashboard_endpoint(client, db):
    admin = auth_headers(make_user(db, email="admin@example.com", role="admin"))
    res = client.get("/admin/dashboard/stats", headers=admin)
    assert res.status_code == 200
    assert res.json()["userStats"]["totalUsers"] == 1
