import logging

from django.db import transaction

from apps.inventory.services import StockLedger
from apps.utils.exceptions import NotFoundError, ValidationError
from apps.utils.utils import money
from apps.utils.validators import validate_not_blank

from .cache import ProductCache
from .models import Product
from .repositories import ProductRepository

logger = logging.getLogger(__name__)


class ProductService:
    """
    Catalog reads go through the cache; writes go to the repository and
    invalidate. Order pricing does not use this service's cache.
    """

    def __init__(self, repository=None, cache=None, ledger=None):
        self.repository = repository or ProductRepository()
        self.cache = cache or ProductCache()
        self.ledger = ledger or StockLedger()

    def create_product(self, name, price, cost_price=0, initial_stock=0,
                       reorder_level=10, warehouse_location="", sku=None, **extra):
        name = validate_not_blank(name, "name")
        price, cost_price = money(price), money(cost_price)
        if price < 0 or cost_price < 0:
            raise ValidationError("Prices must be >= 0.")
        if not isinstance(initial_stock, int) or initial_stock < 0:
            raise ValidationError("initial_stock must be >= 0.")

        with transaction.atomic():
            product = self.repository.save(
                Product(name=name, price=price, cost_price=cost_price, sku=sku or None, **extra)
            )
            record = self.ledger.open_record(
                product,
                initial_qty=initial_stock,
                reorder_level=reorder_level,
                warehouse_location=warehouse_location,
            )
            if record is None:
                raise ValidationError("Invalid stock settings for new product.")

        self.cache.invalidate_all()
        logger.info(f"Product {product.pk} created with stock {initial_stock}")
        return product

    def get_product(self, product_id):
        product = self.cache.get(f"product:{product_id}")
        if product is not None:
            return product

        product = self.repository.find_by_id(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found.")
        self.cache.put(f"product:{product_id}", product)
        return product

    def search_products(self, term):
        term = validate_not_blank(term, "term").lower()
        key = f"search:{term}"
        results = self.cache.get(key)
        if results is None:
            results = self.repository.search(term)
            self.cache.put(key, results)
        return results

    def update_price(self, product_id, price):
        price = money(price)
        if price < 0:
            raise ValidationError("Price must be >= 0.")

        product = self.repository.find_by_id(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found.")

        product.price = price
        self.repository.update(product, fields=["price"])
        self._invalidate(product_id)
        return product

    def deactivate(self, product_id):
        product = self.repository.find_by_id(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found.")
        product.is_active = False
        self.repository.update(product, fields=["is_active"])
        self._invalidate(product_id)
        return product

    def _invalidate(self, product_id):
        self.cache.invalidate(f"product:{product_id}")
        # Search results may hold the old row too.
        self.cache.invalidate_all()
