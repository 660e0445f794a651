from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


class ProductForm(BaseModel):
    code: str = Field(..., min_length=1, max_length=191)
    name: str = Field(..., min_length=1, max_length=255)
    user_label: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    catalog_price: Decimal | None = Field(
        default=None, ge=0, max_digits=10, decimal_places=2
    )
    stock: int = Field(default=0, ge=0)
    visible: bool = False
    shop: bool = False
    sorting: int | None = Field(default=None, ge=0)
    tags: list[int] = Field(default_factory=list)

    model_config = {"str_strip_whitespace": True}

    @field_validator("price", "catalog_price", mode="before")
    @classmethod
    def _accept_decimal_comma(cls, value):
        if isinstance(value, str):
            value = value.strip().replace(",", ".")
            if value == "":
                return None
        return value

    @field_validator("sorting", mode="before")
    @classmethod
    def _blank_sorting(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("stock", mode="before")
    @classmethod
    def _blank_stock(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return 0
        return value


class ProductResponse(BaseModel):
    id: int
    code: str
    name: str
    user_label: str = Field(alias="userLabel")
    price: Decimal
    catalog_price: Decimal | None = Field(default=None, alias="catalogPrice")
    stock: int
    visible: bool
    shop: bool
    sorting: int
    sold_count: int | None = Field(default=None, alias="soldCount")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    model_config = {
        "populate_by_name": True,
        "json_encoders": {Decimal: lambda value: format(value, "f")},
    }


class ProductListResponse(BaseModel):
    items: list[ProductResponse]
    total: int
    filtered: int
    page: int
    page_size: int = Field(alias="pageSize")

    model_config = {"populate_by_name": True}


class DistributionBucketResponse(BaseModel):
    lower: float
    upper: float | None = None
    count: int


class DistributionResponse(BaseModel):
    type: str
    levels: list[float]
    buckets: list[DistributionBucketResponse]


class DistributionUserResponse(BaseModel):
    id: int
    email: str | None = None
    metric: float | None = None


class ProductStatsResponse(BaseModel):
    product_id: int = Field(alias="productId")
    product_count: int = Field(alias="productCount")
    product_amount: Decimal = Field(alias="productAmount")

    model_config = {
        "populate_by_name": True,
        "json_encoders": {Decimal: lambda value: format(value, "f")},
    }


class SortingUpdateRequest(BaseModel):
    position: int = Field(..., ge=0)


class StockDecreaseRequest(BaseModel):
    count: int = Field(default=1, ge=1)
