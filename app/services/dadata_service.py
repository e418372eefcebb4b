from typing import Optional

import httpx

from app.logging_config import get_logger
from app.schemas.order import AddressSuggestion

logger = get_logger("dadata_service")

DADATA_SUGGEST_URL = "https://suggestions.dadata.ru/suggestions/api/4_1/rs/suggest/address"
MIN_QUERY_LENGTH = 3


class DadataService:
    """Address autocompletion for the web order form."""

    def __init__(self, api_key: Optional[str], timeout: float = 5.0):
        self.api_key = api_key
        self.timeout = timeout

    async def suggest_address(self, query: Optional[str], count: int = 5) -> list[AddressSuggestion]:
        if not self.api_key:
            logger.warning("DADATA_API_KEY is not configured, address suggestions disabled")
            return []
        if not query or len(query) < MIN_QUERY_LENGTH:
            return []

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Token {self.api_key}",
        }
        payload = {"query": query, "count": count, "locations": [{"country": "Россия"}]}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(DADATA_SUGGEST_URL, json=payload, headers=headers)
            response.raise_for_status()
            suggestions = response.json().get("suggestions") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.error("DaData API error", extra={"context": {"error": str(e)}})
            return []

        result = []
        for item in suggestions:
            data = item.get("data") or {}
            result.append(
                AddressSuggestion(
                    value=item.get("value", ""),
                    unrestricted_value=item.get("unrestricted_value"),
                    data={
                        key: data.get(key)
                        for key in ("city", "street", "house", "flat", "postal_code", "geo_lat", "geo_lon")
                    },
                )
            )
        return result
