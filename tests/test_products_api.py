from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.core.database import db
from app.main import app
from app.repositories import distributions as distributions_repo
from app.repositories import products as products_repo
from app.repositories import tags as tags_repo
from app.services.distributions import DistributionBucket


PRODUCT = {
    "id": 5,
    "code": "weekly",
    "name": "Weekly print",
    "user_label": "Weekly",
    "price": Decimal("12.50"),
    "catalog_price": None,
    "stock": 2,
    "visible": True,
    "shop": True,
    "sorting": 1,
}


@pytest.fixture(autouse=True)
def mock_startup(monkeypatch):
    async def fake_connect():
        return None

    async def fake_disconnect():
        return None

    async def fake_run_migrations():
        return None

    monkeypatch.setattr(db, "connect", fake_connect)
    monkeypatch.setattr(db, "disconnect", fake_disconnect)
    monkeypatch.setattr(db, "run_migrations", fake_run_migrations)


@pytest.fixture(autouse=True)
def stored_product(monkeypatch):
    async def fake_get_product(product_id):
        return dict(PRODUCT) if product_id == PRODUCT["id"] else None

    monkeypatch.setattr(products_repo, "get_product", fake_get_product)


def test_get_product_includes_sold_count(monkeypatch):
    async def fake_sold_count(product_id):
        return 9

    monkeypatch.setattr(products_repo, "sold_count", fake_sold_count)

    with TestClient(app) as client:
        response = client.get("/api/products/5")

    assert response.status_code == 200
    payload = response.json()
    assert payload["userLabel"] == "Weekly"
    assert payload["soldCount"] == 9
    assert Decimal(payload["price"]) == Decimal("12.50")


def test_unknown_product_returns_404():
    with TestClient(app) as client:
        response = client.get("/api/products/404")

    assert response.status_code == 404
    assert response.json()["detail"] == "Product not found"


def test_list_products_paginates_search(monkeypatch):
    specs = []

    async def fake_count_products(spec):
        return 120 if not spec.conditions and not spec.any_of else 30

    async def fake_list_products(spec):
        specs.append(spec)
        return [dict(PRODUCT)]

    monkeypatch.setattr(products_repo, "count_products", fake_count_products)
    monkeypatch.setattr(products_repo, "list_products", fake_list_products)

    with TestClient(app) as client:
        response = client.get("/api/products", params={"tags": [3], "page": 2, "pageSize": 20})

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 120
    assert payload["filtered"] == 30
    assert payload["page"] == 2
    assert payload["pageSize"] == 20
    assert specs[0].limit == 20
    assert specs[0].offset == 20


def test_distribution_returns_buckets(monkeypatch):
    async def fake_distribution(self, product_id, levels):
        return [
            DistributionBucket(lower=lower, upper=upper, count=index)
            for index, (lower, upper) in enumerate(zip(levels, list(levels[1:]) + [None]))
        ]

    monkeypatch.setattr(distributions_repo.Distribution, "distribution", fake_distribution)

    with TestClient(app) as client:
        response = client.get("/api/products/5/distributions/paymentCounts")

    assert response.status_code == 200
    payload = response.json()
    assert payload["type"] == "paymentCounts"
    assert payload["levels"][0] == 0
    assert len(payload["buckets"]) == len(payload["levels"])
    assert payload["buckets"][-1]["upper"] is None


def test_unknown_distribution_type_returns_404():
    with TestClient(app) as client:
        response = client.get("/api/products/5/distributions/bogus")

    assert response.status_code == 404


def test_distribution_users_requires_from_level():
    with TestClient(app) as client:
        response = client.get("/api/products/5/distributions/amountSpent/users")

    assert response.status_code == 422


def test_distribution_users_lists_customers(monkeypatch):
    async def fake_distribution_list(self, product_id, from_level, to_level=None):
        return [{"id": 1, "email": "a@example.com", "metric": from_level}]

    monkeypatch.setattr(distributions_repo.Distribution, "distribution_list", fake_distribution_list)

    with TestClient(app) as client:
        response = client.get(
            "/api/products/5/distributions/shopCounts/users",
            params={"fromLevel": 3, "toLevel": 5},
        )

    assert response.status_code == 200
    assert response.json() == [{"id": 1, "email": "a@example.com", "metric": 3.0}]


def test_sorting_patch_reorders_product(monkeypatch):
    calls = []

    async def fake_update_sorting(new_position, old_position=None, *, product_id=None):
        calls.append(("update_sorting", new_position, old_position, product_id))

    monkeypatch.setattr(products_repo, "update_sorting", fake_update_sorting)

    with TestClient(app) as client:
        response = client.patch("/api/products/5/sorting", json={"position": 4})

    assert response.status_code == 200
    assert response.json()["sorting"] == 4
    assert calls == [("update_sorting", 4, 1, 5)]


def test_sorting_patch_rejects_negative_position():
    with TestClient(app) as client:
        response = client.patch("/api/products/5/sorting", json={"position": -1})

    assert response.status_code == 422


def test_sorting_patch_unknown_product_returns_404():
    with TestClient(app) as client:
        response = client.patch("/api/products/404/sorting", json={"position": 2})

    assert response.status_code == 404


def test_stock_decrease(monkeypatch):
    async def fake_decrease_stock(product_id, count=1):
        return None

    monkeypatch.setattr(products_repo, "decrease_stock", fake_decrease_stock)

    with TestClient(app) as client:
        response = client.post("/api/products/5/stock/decrease", json={"count": 2})

    assert response.status_code == 200
    assert response.json()["stock"] == 0


def test_product_by_code(monkeypatch):
    async def fake_get_product_by_code(code):
        return dict(PRODUCT) if code == "weekly" else None

    monkeypatch.setattr(products_repo, "get_product_by_code", fake_get_product_by_code)

    with TestClient(app) as client:
        found = client.get("/api/products/by-code/weekly")
        missing = client.get("/api/products/by-code/daily")

    assert found.status_code == 200
    assert found.json()["id"] == 5
    assert missing.status_code == 404


def test_products_batch_looks_up_ids(monkeypatch):
    captured = {}

    async def fake_find_by_ids(product_ids):
        captured["ids"] = list(product_ids)
        return [dict(PRODUCT)]

    monkeypatch.setattr(products_repo, "find_by_ids", fake_find_by_ids)

    with TestClient(app) as client:
        response = client.get("/api/products/batch", params={"ids": [5, 8]})

    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [5]
    assert captured["ids"] == [5, 8]


def test_shop_products_filters_by_known_tag(monkeypatch):
    specs = []

    async def fake_get_tag(tag_id):
        return {"id": tag_id, "code": "print", "name": "Print"} if tag_id == 2 else None

    async def fake_list_products(spec):
        specs.append(spec)
        return [dict(PRODUCT)]

    monkeypatch.setattr(tags_repo, "get_tag", fake_get_tag)
    monkeypatch.setattr(products_repo, "list_products", fake_list_products)

    with TestClient(app) as client:
        response = client.get("/api/products/shop", params={"tag": 2, "orderBy": "price", "limit": 3})
        unknown_tag = client.get("/api/products/shop", params={"tag": 9})

    assert response.status_code == 200
    [spec] = specs
    assert spec.params == (True, True, 0, 2)
    assert spec.order_by == ("products.price ASC",)
    assert spec.limit == 3
    assert unknown_tag.status_code == 404


def test_shop_products_rejects_unknown_ordering():
    with TestClient(app) as client:
        response = client.get("/api/products/shop", params={"orderBy": "name; DROP TABLE products"})

    assert response.status_code == 400
