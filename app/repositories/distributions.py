from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from app.core.database import db
from app.repositories.products import PAYMENT_STATUS_PAID, PRODUCT_ITEM_TYPE
from app.services.distributions import DistributionBucket, level_ranges

_SHOP_ITEMS_JOIN = (
    "INNER JOIN payment_items AS shop_items ON shop_items.payment_id = payments.id "
    "AND shop_items.type = %s"
)


@dataclass(frozen=True, slots=True)
class Metric:
    """Per-customer aggregate over the customer's paid payments.

    ``expression`` is evaluated per ``payments.user_id`` group; ``shop_only``
    restricts the payments to those carrying product items.
    """

    key: str
    config_key: str
    label: str
    expression: str
    shop_only: bool = False


AMOUNT_SPENT = Metric(
    key="amountSpent",
    config_key="user_payment_amount",
    label="Amount spent",
    expression="SUM(payments.amount)",
)
PAYMENT_COUNTS = Metric(
    key="paymentCounts",
    config_key="user_payment_count",
    label="Payment count",
    expression="COUNT(payments.id)",
)
SHOP_DAYS = Metric(
    key="shopDays",
    config_key="product_days_from_last_order",
    label="Days from last order",
    expression="DATEDIFF(UTC_TIMESTAMP(), MAX(payments.paid_at))",
    shop_only=True,
)
SHOP_COUNTS = Metric(
    key="shopCounts",
    config_key="product_shop_count",
    label="Shop orders",
    expression="COUNT(DISTINCT payments.id)",
    shop_only=True,
)


class Distribution:
    """Buckets the buyers of a product by a single metric."""

    def __init__(self, metric: Metric) -> None:
        self.metric = metric

    def _metric_query(self, product_id: int) -> tuple[str, tuple[Any, ...]]:
        params: list[Any] = []
        join = ""
        if self.metric.shop_only:
            join = _SHOP_ITEMS_JOIN
            params.append(PRODUCT_ITEM_TYPE)
        params.extend([PAYMENT_STATUS_PAID, product_id, PRODUCT_ITEM_TYPE, PAYMENT_STATUS_PAID])
        sql = f"""
            SELECT payments.user_id AS user_id, {self.metric.expression} AS metric
            FROM payments
            {join}
            WHERE payments.status = %s
                AND payments.user_id IN (
                    SELECT DISTINCT buyers.user_id
                    FROM payments AS buyers
                    INNER JOIN payment_items AS bought ON bought.payment_id = buyers.id
                    WHERE bought.product_id = %s
                        AND bought.type = %s
                        AND buyers.status = %s
                )
            GROUP BY payments.user_id
        """
        return sql, tuple(params)

    async def distribution(
        self, product_id: int, levels: Sequence[float]
    ) -> list[DistributionBucket]:
        ranges = level_ranges(levels)
        columns: list[str] = []
        params: list[Any] = []
        for index, (lower, upper) in enumerate(ranges):
            if upper is None:
                columns.append(
                    f"COALESCE(SUM(CASE WHEN metrics.metric >= %s THEN 1 ELSE 0 END), 0) AS level{index}"
                )
                params.append(lower)
            else:
                columns.append(
                    "COALESCE(SUM(CASE WHEN metrics.metric >= %s AND metrics.metric < %s "
                    f"THEN 1 ELSE 0 END), 0) AS level{index}"
                )
                params.extend([lower, upper])

        metric_sql, metric_params = self._metric_query(product_id)
        row = await db.fetch_one(
            f"SELECT {', '.join(columns)} FROM ({metric_sql}) AS metrics",
            tuple(params) + metric_params,
        )
        row = row or {}
        return [
            DistributionBucket(lower=lower, upper=upper, count=int(row.get(f"level{index}") or 0))
            for index, (lower, upper) in enumerate(ranges)
        ]

    async def distribution_list(
        self,
        product_id: int,
        from_level: float,
        to_level: float | None = None,
    ) -> list[dict[str, Any]]:
        metric_sql, metric_params = self._metric_query(product_id)
        conditions = ["metrics.metric >= %s"]
        params: list[Any] = [from_level]
        if to_level is not None:
            conditions.append("metrics.metric < %s")
            params.append(to_level)

        rows = await db.fetch_all(
            f"""
            SELECT users.id, users.email, metrics.metric
            FROM ({metric_sql}) AS metrics
            INNER JOIN users ON users.id = metrics.user_id
            WHERE {" AND ".join(conditions)}
            ORDER BY metrics.metric DESC, users.id ASC
            """,
            metric_params + tuple(params),
        )
        return [
            {"id": int(row["id"]), "email": row.get("email"), "metric": row.get("metric")}
            for row in rows
        ]


DISTRIBUTIONS: dict[str, Distribution] = {
    metric.key: Distribution(metric)
    for metric in (AMOUNT_SPENT, PAYMENT_COUNTS, SHOP_DAYS, SHOP_COUNTS)
}


def get_distribution(distribution_type: str | None) -> Distribution | None:
    if not distribution_type:
        return None
    return DISTRIBUTIONS.get(distribution_type)
