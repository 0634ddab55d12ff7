import random
from decimal import Decimal

from django.core.management.base import BaseCommand

from apps.catalog.models import Product
from apps.catalog.services import ProductService

DEMO_PRODUCTS = [
    ("Wireless Mouse", "WM-001", "Logi", Decimal("24.99"), Decimal("12.00")),
    ("Mechanical Keyboard", "MK-002", "Keychron", Decimal("89.00"), Decimal("55.00")),
    ("USB-C Hub", "UH-003", "Anker", Decimal("39.50"), Decimal("18.75")),
    ("27in Monitor", "MN-004", "Dell", Decimal("229.00"), Decimal("160.00")),
    ("Laptop Stand", "LS-005", "Rain", Decimal("45.00"), Decimal("20.00")),
]


class Command(BaseCommand):
    help = "Seed demo products with stock records"

    def add_arguments(self, parser):
        parser.add_argument(
            '--qty',
            type=int,
            default=None,
            help='Initial stock per product (random 5-100 if omitted)'
        )
        parser.add_argument(
            '--location',
            default='MAIN',
            help='Warehouse location for the new stock records'
        )

    def handle(self, *args, **options):
        qty = options['qty']
        if qty is not None and qty < 0:
            self.stdout.write(self.style.ERROR("--qty must be >= 0"))
            return

        service = ProductService()
        created = 0
        skipped = 0

        for name, sku, brand, price, cost in DEMO_PRODUCTS:
            if Product.objects.filter(sku=sku).exists():
                skipped += 1
                continue

            service.create_product(
                name=name,
                sku=sku,
                brand=brand,
                price=price,
                cost_price=cost,
                initial_stock=qty if qty is not None else random.randint(5, 100),
                reorder_level=5,
                warehouse_location=options['location'],
            )
            created += 1

        self.stdout.write(
            self.style.SUCCESS(f"Catalog seeded. Created: {created}, skipped existing: {skipped}")
        )
