from bookshop.clients.catalog_client import BookSummary, CatalogClient

__all__ = ["BookSummary", "CatalogClient"]
