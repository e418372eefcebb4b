"""Product photos for catalog cards, downloaded from the shop's CDN."""

import httpx

from app.logging_config import get_logger
from app.services.catalog_service import Product

logger = get_logger("product_image_service")


class ProductImageError(Exception):
    pass


class ProductImageService:
    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout

    async def download(self, product: Product) -> bytes:
        if not product.picture:
            raise ProductImageError(f"Product {product.id} has no picture")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(product.picture)
        except httpx.HTTPError as e:
            raise ProductImageError(f"Picture of {product.id} not downloaded: {e}") from e
        if response.status_code >= 400 or not response.content:
            raise ProductImageError(f"Picture of {product.id} not downloaded: HTTP {response.status_code}")
        logger.debug(f"Picture of {product.id} downloaded ({len(response.content)} bytes)")
        return response.content
