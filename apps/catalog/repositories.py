from apps.utils.repository import ModelRepository

from .models import Product


class ProductRepository(ModelRepository):
    model = Product

    def find_active(self):
        return list(Product.objects.filter(is_active=True))

    def find_by_ids(self, ids):
        return Product.objects.in_bulk(list(ids))

    def search(self, term):
        return list(Product.objects.filter(name__icontains=term.strip(), is_active=True))
