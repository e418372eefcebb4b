from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from app.logging_config import get_logger
from app.services.data_files import DATA_DIR, load_yaml

logger = get_logger("catalog_service")

_CATALOG_PATH = DATA_DIR / "catalog.yaml"
DEFAULT_PRODUCTS_PER_PAGE = 3


def format_price(price: int) -> str:
    return f"{price:,}".replace(",", " ") + " ₽"


@dataclass(frozen=True)
class Product:
    id: str
    title: str
    price: int
    picture: str = ""
    description: str = ""

    @property
    def caption(self) -> str:
        return f"{self.title}\n{format_price(self.price)}\n+ бесплатная доставка"


@dataclass(frozen=True)
class Category:
    key: str
    name: str
    emoji: str = ""
    description: str = ""
    product_ids: tuple[str, ...] = ()

    @property
    def header(self) -> str:
        header = f"{self.emoji} {self.name}".strip()
        if self.description:
            header = f"{header}\n\n{self.description}"
        return header


@dataclass
class ProductPage:
    category: Category
    offset: int
    per_page: int
    products: list[Product] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.category.product_ids)

    @property
    def has_more(self) -> bool:
        return self.offset + self.per_page < self.total

    @property
    def next_offset(self) -> Optional[int]:
        return self.offset + self.per_page if self.has_more else None


class CatalogService:
    def __init__(self, path: Path = _CATALOG_PATH):
        self.path = path

    @property
    def _data(self) -> dict:
        return load_yaml(self.path)

    @property
    def products_per_page(self) -> int:
        return int(self._data.get("products_per_page") or DEFAULT_PRODUCTS_PER_PAGE)

    def categories(self) -> list[Category]:
        return [
            Category(
                key=str(raw["key"]),
                name=str(raw.get("name") or raw["key"]),
                emoji=str(raw.get("emoji") or ""),
                description=str(raw.get("description") or ""),
                product_ids=tuple(str(product_id) for product_id in raw.get("product_ids") or []),
            )
            for raw in self._data.get("categories") or []
        ]

    def get_category(self, key: Optional[str]) -> Optional[Category]:
        for category in self.categories():
            if category.key == key:
                return category
        return None

    def get_product(self, product_id: str) -> Optional[Product]:
        for raw in self._data.get("products") or []:
            if str(raw.get("id")) != str(product_id):
                continue
            return Product(
                id=str(raw["id"]),
                title=str(raw.get("title") or raw["id"]),
                price=int(raw.get("price") or 0),
                picture=str(raw.get("picture") or ""),
                description=str(raw.get("description") or ""),
            )
        return None

    def page(self, key: Optional[str], offset: int = 0) -> Optional[ProductPage]:
        """One page of a category's products; None for an unknown category.

        Ids without a product entry are skipped, so a page may hold fewer
        products than per_page.
        """
        category = self.get_category(key)
        if category is None:
            return None

        offset = max(offset, 0)
        per_page = self.products_per_page
        page = ProductPage(category=category, offset=offset, per_page=per_page)
        for product_id in category.product_ids[offset:offset + per_page]:
            product = self.get_product(product_id)
            if product is None:
                logger.warning("Catalog product not found", extra={"context": {"product_id": product_id}})
                continue
            page.products.append(product)
        return page
