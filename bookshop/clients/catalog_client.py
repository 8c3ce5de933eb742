"""
Catalog Service API client

Read-only book lookup used to validate orders. The catalog service answers
GET {CATALOG_SERVICE_URL}/api/v1/books/{id} with the book's price and stock.
"""

import httpx
from pydantic import BaseModel, ValidationError

from bookshop.core.errors import ServiceUnavailableError
from bookshop.core.logging import get_logger
from bookshop.core.tracing import TRACEPARENT_HEADER, get_trace_context
from bookshop.events.base import Money

logger = get_logger(__name__)


class BookSummary(BaseModel):
    id: int
    title: str = ""
    price: Money
    stock: int


class CatalogClient:
    """HTTP client for the catalog read lookup"""

    def __init__(self, base_url: str, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_book(self, book_id: int) -> BookSummary | None:
        """
        Fetch a book's price and stock.

        Returns:
            BookSummary, or None if the catalog reports 404

        Raises:
            ServiceUnavailableError: the catalog is unreachable, answered
                with an unexpected status or sent a body that is not a book
        """
        headers = {}
        trace_context = get_trace_context()
        if trace_context:
            headers[TRACEPARENT_HEADER] = trace_context.to_traceparent_header()

        logger.debug("catalog_api_call", book_id=book_id, url=self.base_url)
        try:
            response = await self._client.get(f"/api/v1/books/{book_id}", headers=headers)
        except httpx.HTTPError as e:
            logger.error(
                "catalog_api_unreachable",
                book_id=book_id,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise ServiceUnavailableError("Catalog service unavailable.") from e

        if response.status_code == 404:
            logger.info("catalog_api_not_found", book_id=book_id)
            return None
        if response.status_code != 200:
            logger.error("catalog_api_error", book_id=book_id, status_code=response.status_code)
            raise ServiceUnavailableError(
                f"Catalog service returned {response.status_code}.",
                upstream_status=response.status_code,
            )

        try:
            book = BookSummary.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(
                "catalog_api_bad_response",
                book_id=book_id,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise ServiceUnavailableError("Catalog service returned an unreadable book.") from e
        logger.info("catalog_api_success", book_id=book_id, stock=book.stock, price=str(book.price))
        return book
