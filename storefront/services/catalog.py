"""
Product catalog configuration.

Static products loaded at process start. Prices are in the smallest currency
unit and are the only source of a checkout amount.
"""

from collections.abc import Iterable

from storefront.exceptions import NotFoundError
from storefront.models.domain import ChargeMode, PeriodConfig, Product, ProductType, Trial

_MONTHLY = PeriodConfig(
    period_type="month",
    period_date="1",
    period_times=12,
    charge_mode=ChargeMode.IMMEDIATE,
    first_charge_delay_days=0,
)

DEFAULT_PRODUCTS: tuple[Product, ...] = (
    # Subscription plans
    Product(
        id="plan_basic",
        type=ProductType.SUBSCRIPTION,
        name="Basic Plan",
        price=990,
        period_config=_MONTHLY,
    ),
    Product(
        id="plan_pro",
        type=ProductType.SUBSCRIPTION,
        name="Pro Plan",
        price=1990,
        period_config=_MONTHLY,
    ),
    Product(
        id="plan_monthly_trial",
        type=ProductType.SUBSCRIPTION,
        name="Monthly Plan (first 7 days free)",
        price=1990,
        period_config=PeriodConfig(
            period_type="month",
            period_date="1",
            period_times=12,
            charge_mode=ChargeMode.DELAYED,
            first_charge_delay_days=7,
        ),
        trial=Trial(
            days=7,
            amount=0,
            description="No charge for the first 7 days, the monthly fee is charged on day 8.",
        ),
    ),
    Product(
        id="plan_enterprise",
        type=ProductType.SUBSCRIPTION,
        name="Enterprise Plan",
        price=4990,
        period_config=_MONTHLY,
    ),
    # One-time purchases
    Product(
        id="course_fullstack",
        type=ProductType.ONE_TIME,
        name="Full-stack Development Course",
        price=3500,
    ),
    Product(
        id="pack_starter",
        type=ProductType.ONE_TIME,
        name="Developer Starter Pack",
        price=1200,
    ),
)


class ProductCatalog:
    """Read-only product lookup."""

    def __init__(self, products: Iterable[Product] = DEFAULT_PRODUCTS) -> None:
        self._products: dict[str, Product] = {}
        for product in products:
            if product.id in self._products:
                raise ValueError(f"Duplicate product ID: {product.id}")
            self._products[product.id] = product

    def get(self, product_id: str) -> Product:
        """
        Get product by ID.

        Raises:
            NotFoundError: If product ID not found
        """
        product = self._products.get(product_id)
        if product is None:
            raise NotFoundError(product_id)
        return product

    def all(self) -> list[Product]:
        """All products in catalog order."""
        return list(self._products.values())
