"""Read-only view of the catalog collaborator: product lookup, pricing, gateways."""

from dataclasses import dataclass

from sqlalchemy import select

from digipay.common.config import EngineConfig
from digipay.services.orders.models import Product


SUPPORTED_CURRENCIES = ("IDR", "USD")


@dataclass(frozen=True)
class Pricing:
    selling_price: int
    capital_cost: int | None


class CatalogReader:
    """Catalog accessor; the product row is the authoritative price source."""

    def get_product(self, db, product_id: str) -> Product | None:
        return db.get(Product, product_id)

    def get_product_by_slug(self, db, slug: str) -> Product | None:
        return db.execute(select(Product).where(Product.slug == slug).limit(1)).scalar_one_or_none()

    def get_for_order(self, db, order) -> Product | None:
        product = self.get_product_by_slug(db, order.product_slug) if order.product_slug else None
        if product is None and order.product_id:
            product = self.get_product(db, order.product_id)
        return product


def _currency_value(source, currency: str) -> int | None:
    if isinstance(source, dict):
        value = source.get(currency)
        return int(value) if value else None
    return None


def _select_plan(product: Product, plan_id: str | None) -> dict | None:
    plans = product.plans or []
    if not plans:
        return None
    if plan_id:
        for plan in plans:
            if plan.get("id") == plan_id:
                return plan
    return plans[0]


def resolve_pricing(product: Product, currency: str, plan_id: str | None, idr_per_usd: int) -> Pricing | None:
    """Derive selling price and capital cost for one currency, or None."""

    selling = _currency_value(product.price, currency)
    if selling is None:
        plan = _select_plan(product, plan_id)
        if plan is not None:
            selling = _currency_value(plan.get("price"), currency)
            legacy = plan.get("priceNumber") or plan.get("price_number")
            if selling is None and legacy:
                # Legacy plans are priced in IDR; USD uses the fixed rate, in cents.
                selling = int(legacy) if currency == "IDR" else round(int(legacy) * 100 / idr_per_usd)
    if not selling:
        return None

    capital = _currency_value(product.capital_cost, currency)
    if capital is None and isinstance(product.capital_cost, (int, float)) and currency == "IDR":
        capital = int(product.capital_cost)
    return Pricing(selling_price=selling, capital_cost=capital)


def resolve_gateway(product: Product, currency: str, config: EngineConfig) -> str:
    if isinstance(product.gateway, dict) and product.gateway.get(currency):
        return product.gateway[currency]
    if isinstance(product.gateway, str) and product.gateway and currency == "IDR":
        return product.gateway
    return config.default_gateways.get(currency) or ("pakasir" if currency == "IDR" else "paypal")


def resolve_backup_gateway(product: Product, currency: str, config: EngineConfig) -> str | None:
    backup = None
    if isinstance(product.backup_gateway, dict):
        backup = product.backup_gateway.get(currency)
    elif isinstance(product.backup_gateway, str) and currency == "IDR":
        backup = product.backup_gateway
    return backup or config.backup_gateways.get(currency)
