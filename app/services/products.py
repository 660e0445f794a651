from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Literal

from app.core.logging import log_audit_event
from app.repositories import distributions as distributions_repo
from app.repositories import products as products_repo
from app.schemas.products import ProductForm
from app.services.distributions import DistributionConfiguration

SALES_GRAPH_DAYS = 31

# Template keys for the detail page, in display order.
DETAIL_DISTRIBUTIONS: tuple[tuple[str, str], ...] = (
    ("amount_spent", distributions_repo.AMOUNT_SPENT.key),
    ("payment_counts", distributions_repo.PAYMENT_COUNTS.key),
    ("shop_counts", distributions_repo.SHOP_COUNTS.key),
    ("shop_days", distributions_repo.SHOP_DAYS.key),
)


class ProductNotFoundError(LookupError):
    """Raised when a product id does not match a stored product."""


class ProductValidationError(ValueError):
    """Raised when submitted product data cannot be stored."""

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("; ".join(f"{key}: {value}" for key, value in errors.items()))
        self.errors = errors


@dataclass(slots=True)
class ProductSaveResult:
    event: Literal["created", "updated"]
    product: dict[str, Any]
    tag_ids: list[int] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.event == "created"


async def save_product(
    form: ProductForm,
    product_id: int | None = None,
    *,
    ip_address: str | None = None,
) -> ProductSaveResult:
    existing: dict[str, Any] | None = None
    if product_id is not None:
        existing = await products_repo.get_product(product_id)
        if not existing:
            raise ProductNotFoundError(f"Product {product_id} not found")

    if await products_repo.code_exists(form.code, exclude_id=product_id):
        raise ProductValidationError({"code": "A product with this code already exists."})

    values = form.model_dump(exclude={"tags", "sorting"})

    if existing is None:
        if form.sorting is None:
            values["sorting"] = await products_repo.max_sorting() + 1
        else:
            await products_repo.update_sorting(form.sorting)
            values["sorting"] = form.sorting
        product = await products_repo.create_product(**values)
        event: Literal["created", "updated"] = "created"
    else:
        if form.sorting is not None and form.sorting != existing["sorting"]:
            await products_repo.update_sorting(
                form.sorting, existing["sorting"], product_id=existing["id"]
            )
        product = await products_repo.update_product(existing["id"], **values)
        if not product:
            raise ProductNotFoundError(f"Product {existing['id']} not found")
        event = "updated"

    await products_repo.replace_product_tags(product["id"], form.tags)

    log_audit_event(
        "create" if event == "created" else "update",
        entity_type="product",
        entity_id=product["id"],
        ip_address=ip_address,
        code=product.get("code"),
    )
    return ProductSaveResult(event=event, product=product, tag_ids=sorted(set(form.tags)))


async def reorder_product(
    product_id: int,
    new_position: int,
    *,
    ip_address: str | None = None,
) -> dict[str, Any]:
    product = await products_repo.get_product(product_id)
    if not product:
        raise ProductNotFoundError(f"Product {product_id} not found")

    old_position = product["sorting"]
    if old_position == new_position:
        return product

    await products_repo.update_sorting(new_position, old_position, product_id=product_id)
    log_audit_event(
        "reorder",
        entity_type="product",
        entity_id=product_id,
        ip_address=ip_address,
        old_position=old_position,
        new_position=new_position,
    )
    product["sorting"] = new_position
    return product


async def decrease_stock(
    product_id: int,
    count: int = 1,
    *,
    ip_address: str | None = None,
) -> dict[str, Any]:
    product = await products_repo.get_product(product_id)
    if not product:
        raise ProductNotFoundError(f"Product {product_id} not found")
    await products_repo.decrease_stock(product_id, count)
    log_audit_event(
        "decrease_stock",
        entity_type="product",
        entity_id=product_id,
        ip_address=ip_address,
        count=count,
    )
    product["stock"] -= count
    return product


async def sales_series(
    product_id: int,
    *,
    days: int = SALES_GRAPH_DAYS,
    today: date | None = None,
) -> list[dict[str, Any]]:
    """Daily sold counts for the last ``days`` days, zero-filled."""

    end_day = today or datetime.now(timezone.utc).date()
    start_day = end_day - timedelta(days=days - 1)
    sold_by_day = await products_repo.daily_sales(
        product_id, datetime.combine(start_day, time.min)
    )
    return [
        {"date": day, "count": sold_by_day.get(day, 0)}
        for day in (start_day + timedelta(days=offset) for offset in range(days))
    ]


async def product_detail(
    product: dict[str, Any],
    configuration: DistributionConfiguration,
) -> dict[str, Any]:
    product_id = product["id"]
    levels_by_key: dict[str, list[float]] = {}
    tasks = []
    for template_key, distribution_type in DETAIL_DISTRIBUTIONS:
        distribution = distributions_repo.DISTRIBUTIONS[distribution_type]
        levels = configuration.levels(distribution.metric.config_key)
        levels_by_key[template_key] = levels
        tasks.append(distribution.distribution(product_id, levels))

    results = await asyncio.gather(
        *tasks,
        products_repo.sold_count(product_id),
        sales_series(product_id),
        products_repo.list_product_tags(product_id),
    )
    bucket_results = results[: len(DETAIL_DISTRIBUTIONS)]
    sold_count, series, tags = results[len(DETAIL_DISTRIBUTIONS):]

    distributions = {
        template_key: {
            "type": distribution_type,
            "label": distributions_repo.DISTRIBUTIONS[distribution_type].metric.label,
            "levels": levels_by_key[template_key],
            "buckets": buckets,
        }
        for (template_key, distribution_type), buckets in zip(DETAIL_DISTRIBUTIONS, bucket_results)
    }
    return {
        "product": product,
        "tags": tags,
        "distributions": distributions,
        "sold_count": sold_count,
        "sales_series": series,
    }
