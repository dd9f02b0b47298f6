from typing import Dict, Iterable, Optional

from .models import Product


class ProductService:
    """
    Read-only product lookups used by the cart and order pipeline.
    Product CRUD lives elsewhere.
    """

    @staticmethod
    def find_by_id(product_id) -> Optional[Product]:
        return Product.objects.filter(pk=product_id).first()

    @staticmethod
    def in_bulk(product_ids: Iterable) -> Dict[str, Product]:
        """
        Keyed by str(product_id) so callers can look up with either UUIDs or strings.
        """
        products = Product.objects.in_bulk(list(product_ids))
        return {str(pk): product for pk, product in products.items()}
