from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Sequence

import aiomysql

from app.core.database import db
from app.repositories.query import QuerySpec

PRODUCT_ITEM_TYPE = "product"
PAYMENT_STATUS_PAID = "paid"

_NUMERIC_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

_PRODUCT_COLUMNS = (
    "code",
    "name",
    "user_label",
    "price",
    "catalog_price",
    "stock",
    "visible",
    "shop",
    "sorting",
)

_SHOP_ORDER_EXPRESSIONS = {
    "sorting": "products.sorting ASC",
    "products.sorting": "products.sorting ASC",
    "name": "products.name ASC",
    "price": "products.price ASC",
    "-price": "products.price DESC",
    "sold_count": "sold_count DESC",
    "random": "RAND()",
    "RAND()": "RAND()",
}

_PAID_PRODUCT_ITEMS_JOIN = (
    "INNER JOIN payment_items ON payment_items.product_id = products.id "
    "AND payment_items.type = %s "
    "INNER JOIN payments ON payments.id = payment_items.payment_id "
    "AND payments.status = %s"
)


def _coerce_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _normalise_product(row: dict[str, Any]) -> dict[str, Any]:
    product = dict(row)
    product["id"] = int(row["id"])
    product["price"] = _coerce_decimal(row.get("price")) or Decimal("0")
    product["catalog_price"] = _coerce_decimal(row.get("catalog_price"))
    product["stock"] = _coerce_int(row.get("stock"))
    product["sorting"] = _coerce_int(row.get("sorting"))
    product["visible"] = bool(row.get("visible"))
    product["shop"] = bool(row.get("shop"))
    if "sold_count" in row:
        product["sold_count"] = _coerce_int(row.get("sold_count"))
    return product


def parse_search_number(text: str | None) -> float | None:
    """Interpret ``text`` as a number, accepting a comma as decimal separator."""

    if text is None:
        return None
    candidate = text.strip().replace(",", ".")
    if not _NUMERIC_PATTERN.match(candidate):
        return None
    value = float(candidate)
    # MySQL cannot bind inf, e.g. "1e999"
    return value if math.isfinite(value) else None


def _tag_filter(tag_ids: Sequence[int]) -> tuple[str, tuple[int, ...]]:
    placeholders = ", ".join(["%s"] * len(tag_ids))
    return (
        f"products.id IN (SELECT product_tags.product_id FROM product_tags "
        f"WHERE product_tags.tag_id IN ({placeholders}))",
        tuple(int(tag_id) for tag_id in tag_ids),
    )


def search(text: str | None = None, tags: Iterable[int] | None = None) -> QuerySpec:
    # Ascending sorting with NULLs last, then name.
    spec = QuerySpec(table="products").order("-products.sorting DESC", "products.name ASC")
    tag_ids = [int(tag_id) for tag_id in (tags or [])]

    if not tag_ids and (text is None or not text.strip()):
        return spec

    like = f"%{text or ''}%"
    clauses: list[tuple[str, Any]] = [
        ("products.name LIKE %s", like),
        ("products.code LIKE %s", like),
        ("products.user_label LIKE %s", like),
    ]
    number = parse_search_number(text)
    if number is not None:
        clauses.append(("products.price = %s", number))
        clauses.append(("products.catalog_price = %s", number))

    if tag_ids:
        sql, params = _tag_filter(tag_ids)
        spec = spec.where(sql, *params)
    return spec.where_any(clauses)


async def list_products(spec: QuerySpec) -> list[dict[str, Any]]:
    sql, params = spec.to_sql()
    rows = await db.fetch_all(sql, params or None)
    return [_normalise_product(row) for row in rows]


async def count_products(spec: QuerySpec) -> int:
    sql, params = spec.count_sql()
    row = await db.fetch_one(sql, params or None)
    if not row:
        return 0
    return _coerce_int(row.get("total"))


async def get_product(product_id: int) -> dict[str, Any] | None:
    row = await db.fetch_one("SELECT * FROM products WHERE id = %s", (product_id,))
    return _normalise_product(row) if row else None


async def get_product_by_code(code: str) -> dict[str, Any] | None:
    row = await db.fetch_one("SELECT * FROM products WHERE code = %s", (code,))
    return _normalise_product(row) if row else None


async def find_by_ids(product_ids: Iterable[int]) -> list[dict[str, Any]]:
    identifiers = sorted({int(pid) for pid in product_ids})
    if not identifiers:
        return []
    placeholders = ", ".join(["%s"] * len(identifiers))
    rows = await db.fetch_all(
        f"SELECT * FROM products WHERE id IN ({placeholders})",
        tuple(identifiers),
    )
    return [_normalise_product(row) for row in rows]


async def code_exists(code: str, *, exclude_id: int | None = None) -> bool:
    sql = "SELECT COUNT(*) AS total FROM products WHERE code = %s"
    params: tuple[Any, ...] = (code,)
    if exclude_id is not None:
        sql += " AND id != %s"
        params += (exclude_id,)
    row = await db.fetch_one(sql, params)
    return bool(row and _coerce_int(row.get("total")) > 0)


def shop_products(
    *,
    visible_only: bool = True,
    available_only: bool = True,
    tag_id: int | None = None,
    order_by: str = "sorting",
) -> QuerySpec:
    try:
        order_expression = _SHOP_ORDER_EXPRESSIONS[order_by]
    except KeyError:
        raise ValueError(f"Unsupported product ordering '{order_by}'") from None

    spec = QuerySpec(table="products").where("products.shop = %s", True)
    if visible_only:
        spec = spec.where("products.visible = %s", True)
    if available_only:
        spec = spec.where("products.stock > %s", 0)
    if tag_id is not None:
        sql, params = _tag_filter([tag_id])
        spec = spec.where(sql, *params)
    return spec.order(order_expression)


async def related_products(product_id: int, limit: int = 4) -> list[dict[str, Any]]:
    spec = (
        shop_products(order_by="random")
        .where("products.id != %s", product_id)
        .paginate(limit)
    )
    return await list_products(spec)


def most_sold_products_query(
    start: datetime | None = None,
    end: datetime | None = None,
) -> QuerySpec:
    spec = (
        shop_products(order_by="sold_count")
        .select("products.*", "SUM(payment_items.count) AS sold_count")
        .join(_PAID_PRODUCT_ITEMS_JOIN, PRODUCT_ITEM_TYPE, PAYMENT_STATUS_PAID)
        .group("products.id")
    )
    if start is not None:
        spec = spec.where("payments.paid_at >= %s", start)
    if end is not None:
        spec = spec.where("payments.paid_at < %s", end)
    return spec


async def most_sold_products(
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    spec = most_sold_products_query(start, end)
    if limit is not None:
        spec = spec.paginate(limit)
    return await list_products(spec)


async def update_sorting(
    new_position: int,
    old_position: int | None = None,
    *,
    product_id: int | None = None,
) -> None:
    """Open a gap at ``new_position`` after closing the one at ``old_position``.

    When ``product_id`` is given the product is moved into the gap within the
    same transaction.
    """

    if old_position is not None and int(new_position) == int(old_position):
        return

    async with db.acquire() as conn:
        async with conn.cursor() as cursor:
            await conn.begin()
            try:
                if old_position is not None:
                    await cursor.execute(
                        "UPDATE products SET sorting = sorting - 1 WHERE sorting > %s",
                        (old_position,),
                    )
                await cursor.execute(
                    "UPDATE products SET sorting = sorting + 1 WHERE sorting >= %s",
                    (new_position,),
                )
                if product_id is not None:
                    await cursor.execute(
                        "UPDATE products SET sorting = %s WHERE id = %s",
                        (new_position, product_id),
                    )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise


async def decrease_stock(product_id: int, count: int = 1) -> None:
    await db.execute(
        "UPDATE products SET stock = stock - %s WHERE id = %s",
        (count, product_id),
    )


async def product_stats(
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict[str, Any]]:
    conditions = ["payment_items.type = %s", "payments.status = %s"]
    params: list[Any] = [PRODUCT_ITEM_TYPE, PAYMENT_STATUS_PAID]
    if start is not None:
        conditions.append("payments.paid_at BETWEEN %s AND %s")
        params.extend([start, end or datetime.now(timezone.utc).replace(tzinfo=None)])

    rows = await db.fetch_all(
        f"""
        SELECT
            products.id AS product_id,
            SUM(payment_items.count) AS product_count,
            SUM(payment_items.amount * payment_items.count) AS product_amount
        FROM products
        INNER JOIN payment_items ON payment_items.product_id = products.id
        INNER JOIN payments ON payments.id = payment_items.payment_id
        WHERE {" AND ".join(conditions)}
        GROUP BY products.id
        """,
        tuple(params),
    )
    return [
        {
            "product_id": int(row["product_id"]),
            "product_count": _coerce_int(row.get("product_count")),
            "product_amount": _coerce_decimal(row.get("product_amount")) or Decimal("0"),
        }
        for row in rows
    ]


async def sold_count(product_id: int) -> int:
    value = await db.fetch_value(
        """
        SELECT COALESCE(SUM(payment_items.count), 0) AS sold_count
        FROM payment_items
        INNER JOIN payments ON payments.id = payment_items.payment_id
        WHERE payment_items.product_id = %s AND payments.status = %s
        """,
        (product_id, PAYMENT_STATUS_PAID),
    )
    return _coerce_int(value)


async def daily_sales(product_id: int, start: datetime) -> dict[date, int]:
    rows = await db.fetch_all(
        """
        SELECT DATE(payments.created_at) AS day, SUM(payment_items.count) AS sold
        FROM payments
        INNER JOIN payment_items ON payment_items.payment_id = payments.id
            AND payment_items.type = %s
        WHERE payments.status = %s
            AND payment_items.product_id = %s
            AND payments.created_at >= %s
        GROUP BY DATE(payments.created_at)
        ORDER BY day ASC
        """,
        (PRODUCT_ITEM_TYPE, PAYMENT_STATUS_PAID, product_id, start),
    )
    series: dict[date, int] = {}
    for row in rows:
        day = row.get("day")
        if isinstance(day, datetime):
            day = day.date()
        elif isinstance(day, str):
            day = date.fromisoformat(day[:10])
        if day is None:
            continue
        series[day] = _coerce_int(row.get("sold"))
    return series


def _product_values(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - set(_PRODUCT_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown product fields: {', '.join(sorted(unknown))}")
    return fields


async def create_product(**fields: Any) -> dict[str, Any]:
    values = _product_values(fields)
    columns = ", ".join(values)
    placeholders = ", ".join(["%s"] * len(values))
    product_id = await db.execute_returning_lastrowid(
        f"INSERT INTO products ({columns}) VALUES ({placeholders})",
        tuple(values.values()),
    )
    product = await get_product(product_id)
    if not product:
        raise RuntimeError("Failed to load product after creation")
    return product


async def update_product(product_id: int, **fields: Any) -> dict[str, Any] | None:
    values = _product_values(fields)
    if values:
        assignments = ", ".join(f"{column} = %s" for column in values)
        await db.execute(
            f"UPDATE products SET {assignments} WHERE id = %s",
            tuple(values.values()) + (product_id,),
        )
    return await get_product(product_id)


async def list_product_tags(product_id: int) -> list[dict[str, Any]]:
    rows = await db.fetch_all(
        """
        SELECT tags.id, tags.code, tags.name
        FROM tags
        INNER JOIN product_tags ON product_tags.tag_id = tags.id
        WHERE product_tags.product_id = %s
        ORDER BY tags.code ASC
        """,
        (product_id,),
    )
    return [{"id": int(row["id"]), "code": row["code"], "name": row.get("name")} for row in rows]


async def replace_product_tags(product_id: int, tag_ids: Iterable[int]) -> None:
    identifiers = sorted({int(tag_id) for tag_id in tag_ids})
    async with db.acquire() as conn:
        async with conn.cursor(aiomysql.DictCursor) as cursor:
            await conn.begin()
            try:
                await cursor.execute(
                    "DELETE FROM product_tags WHERE product_id = %s",
                    (product_id,),
                )
                if identifiers:
                    await cursor.executemany(
                        "INSERT INTO product_tags (product_id, tag_id) VALUES (%s, %s)",
                        [(product_id, tag_id) for tag_id in identifiers],
                    )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise


async def max_sorting() -> int:
    value = await db.fetch_value("SELECT COALESCE(MAX(sorting), 0) AS max_sorting FROM products")
    return _coerce_int(value)
