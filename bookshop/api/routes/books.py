from typing import Any

from fastapi import APIRouter

from bookshop.core.errors import NotFoundError
from bookshop.core.logging import get_logger
from bookshop.deps import SessionDep
from bookshop.models import Book, BookPublic

router = APIRouter(prefix="/books", tags=["books"])
logger = get_logger(__name__)


@router.get("/{book_id}", response_model=BookPublic)
async def read_book(session: SessionDep, book_id: int) -> Any:
    """Catalog read lookup used by the order service to validate orders"""
    book = session.get(Book, book_id)
    if book is None:
        raise NotFoundError(f"Book {book_id} not found.")
    logger.debug("book_read", book_id=book_id, stock=book.stock)
    return BookPublic.model_validate(book)
