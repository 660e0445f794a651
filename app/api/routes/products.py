from __future__ import annotations

import math
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.dependencies.database import require_database
from app.core.config import get_distribution_configuration, get_settings
from app.repositories import distributions as distributions_repo
from app.repositories import products as products_repo
from app.repositories import tags as tags_repo
from app.schemas.products import (
    DistributionBucketResponse,
    DistributionResponse,
    DistributionUserResponse,
    ProductListResponse,
    ProductResponse,
    ProductStatsResponse,
    SortingUpdateRequest,
    StockDecreaseRequest,
)
from app.security.request_logger import client_ip
from app.services import products as products_service

router = APIRouter(prefix="/api/products", tags=["Products"])


async def _get_product_or_404(product_id: int) -> dict:
    product = await products_repo.get_product(product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product


def _get_distribution_or_404(distribution_type: str) -> distributions_repo.Distribution:
    distribution = distributions_repo.get_distribution(distribution_type)
    if distribution is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unknown distribution type",
        )
    return distribution


@router.get("", response_model=ProductListResponse)
async def list_products(
    text: str | None = Query(default=None),
    tags: list[int] | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, alias="pageSize", ge=1, le=500),
    _: None = Depends(require_database),
) -> ProductListResponse:
    size = page_size or get_settings().items_per_page
    spec = products_repo.search(text, tags)
    filtered = await products_repo.count_products(spec)
    total = await products_repo.count_products(products_repo.search())
    total_pages = max(1, math.ceil(filtered / size))
    page = min(page, total_pages)
    records = await products_repo.list_products(spec.paginate(size, (page - 1) * size))
    return ProductListResponse(
        items=[ProductResponse.model_validate(record) for record in records],
        total=total,
        filtered=filtered,
        page=page,
        page_size=size,
    )


@router.get("/most-sold", response_model=list[ProductResponse])
async def most_sold_products(
    start: datetime | None = Query(default=None, alias="from"),
    end: datetime | None = Query(default=None, alias="to"),
    limit: int | None = Query(default=None, ge=1, le=500),
    _: None = Depends(require_database),
) -> list[ProductResponse]:
    records = await products_repo.most_sold_products(start, end, limit=limit)
    return [ProductResponse.model_validate(record) for record in records]


@router.get("/stats", response_model=list[ProductStatsResponse])
async def product_stats(
    start: datetime | None = Query(default=None, alias="from"),
    end: datetime | None = Query(default=None, alias="to"),
    _: None = Depends(require_database),
) -> list[ProductStatsResponse]:
    records = await products_repo.product_stats(start, end)
    return [ProductStatsResponse.model_validate(record) for record in records]


@router.get("/shop", response_model=list[ProductResponse])
async def shop_products(
    visible_only: bool = Query(default=True, alias="visibleOnly"),
    available_only: bool = Query(default=True, alias="availableOnly"),
    tag: int | None = Query(default=None),
    order_by: str = Query(default="sorting", alias="orderBy"),
    limit: int | None = Query(default=None, ge=1, le=500),
    _: None = Depends(require_database),
) -> list[ProductResponse]:
    if tag is not None and not await tags_repo.get_tag(tag):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tag not found")
    try:
        spec = products_repo.shop_products(
            visible_only=visible_only,
            available_only=available_only,
            tag_id=tag,
            order_by=order_by,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if limit is not None:
        spec = spec.paginate(limit)
    records = await products_repo.list_products(spec)
    return [ProductResponse.model_validate(record) for record in records]


@router.get("/batch", response_model=list[ProductResponse])
async def products_by_ids(
    ids: list[int] = Query(...),
    _: None = Depends(require_database),
) -> list[ProductResponse]:
    records = await products_repo.find_by_ids(ids)
    return [ProductResponse.model_validate(record) for record in records]


@router.get("/by-code/{code}", response_model=ProductResponse)
async def get_product_by_code(
    code: str,
    _: None = Depends(require_database),
) -> ProductResponse:
    product = await products_repo.get_product_by_code(code)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return ProductResponse.model_validate(product)


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int,
    _: None = Depends(require_database),
) -> ProductResponse:
    product = await _get_product_or_404(product_id)
    product["sold_count"] = await products_repo.sold_count(product_id)
    return ProductResponse.model_validate(product)


@router.get("/{product_id}/related", response_model=list[ProductResponse])
async def related_products(
    product_id: int,
    limit: int = Query(default=4, ge=1, le=50),
    _: None = Depends(require_database),
) -> list[ProductResponse]:
    await _get_product_or_404(product_id)
    records = await products_repo.related_products(product_id, limit)
    return [ProductResponse.model_validate(record) for record in records]


@router.get("/{product_id}/distributions/{distribution_type}", response_model=DistributionResponse)
async def product_distribution(
    product_id: int,
    distribution_type: str,
    _: None = Depends(require_database),
) -> DistributionResponse:
    distribution = _get_distribution_or_404(distribution_type)
    await _get_product_or_404(product_id)
    levels = get_distribution_configuration().levels(distribution.metric.config_key)
    buckets = await distribution.distribution(product_id, levels)
    return DistributionResponse(
        type=distribution_type,
        levels=levels,
        buckets=[
            DistributionBucketResponse(lower=bucket.lower, upper=bucket.upper, count=bucket.count)
            for bucket in buckets
        ],
    )


@router.get(
    "/{product_id}/distributions/{distribution_type}/users",
    response_model=list[DistributionUserResponse],
)
async def product_distribution_users(
    product_id: int,
    distribution_type: str,
    from_level: float = Query(..., alias="fromLevel"),
    to_level: float | None = Query(default=None, alias="toLevel"),
    _: None = Depends(require_database),
) -> list[DistributionUserResponse]:
    distribution = _get_distribution_or_404(distribution_type)
    await _get_product_or_404(product_id)
    users = await distribution.distribution_list(product_id, from_level, to_level)
    return [DistributionUserResponse.model_validate(user) for user in users]


@router.patch("/{product_id}/sorting", response_model=ProductResponse)
async def update_product_sorting(
    product_id: int,
    payload: SortingUpdateRequest,
    request: Request,
    _: None = Depends(require_database),
) -> ProductResponse:
    try:
        product = await products_service.reorder_product(
            product_id, payload.position, ip_address=client_ip(request)
        )
    except products_service.ProductNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found") from exc
    return ProductResponse.model_validate(product)


@router.post("/{product_id}/stock/decrease", response_model=ProductResponse)
async def decrease_product_stock(
    product_id: int,
    payload: StockDecreaseRequest,
    request: Request,
    _: None = Depends(require_database),
) -> ProductResponse:
    try:
        product = await products_service.decrease_stock(
            product_id, payload.count, ip_address=client_ip(request)
        )
    except products_service.ProductNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found") from exc
    return ProductResponse.model_validate(product)
