"""
Local book projection sync.

Books are authored in the content catalog; a local row is created lazily
the first time a book is referenced (purchase, license, free claim).
At most one local Book exists per catalog id: inserts that lose a race
fall back to reading the winner's row.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookgate.integrations.catalog.client import CatalogAPIError, CatalogBook, CatalogClient
from bookgate.models.book import Book

logger = logging.getLogger(__name__)


class BookProjectionService:
    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, sanity_id: str) -> Optional[Book]:
        return self.db.query(Book).filter(Book.sanity_id == sanity_id).first()

    def upsert(
        self,
        sanity_id: str,
        title: str,
        subject: Optional[str] = None,
        slug: Optional[str] = None,
        is_public: Optional[bool] = None,
    ) -> Book:
        """
        Insert or update the projection and commit it.

        Fields passed as None leave the stored value untouched.
        """
        book = self.get(sanity_id)
        if book is None:
            book = Book(
                sanity_id=sanity_id,
                title=title,
                subject=subject,
                slug=slug,
                is_public=bool(is_public),
                is_active=True,
            )
            self.db.add(book)
        else:
            book.title = title or book.title
            if subject is not None:
                book.subject = subject
            if slug is not None:
                book.slug = slug
            if is_public is not None:
                book.is_public = is_public

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            book = self.get(sanity_id)
            if book is None:
                raise
            logger.info("Book projection created concurrently", extra={"sanity_id": sanity_id})

        return book

    def upsert_from_catalog(self, catalog_book: CatalogBook) -> Book:
        return self.upsert(
            sanity_id=catalog_book.id,
            title=catalog_book.name,
            subject=catalog_book.subject,
            slug=catalog_book.slug,
            is_public=catalog_book.is_public,
        )

    async def ensure(
        self,
        sanity_id: str,
        catalog: Optional[CatalogClient] = None,
        fallback_title: Optional[str] = None,
    ) -> Book:
        """
        Return the local projection, creating it on demand.

        A catalog failure never fails the caller: the row is created from
        the fallback title and refreshed on a later sync.
        """
        book = self.get(sanity_id)
        if book is not None:
            return book

        catalog_book = None
        if catalog is not None:
            try:
                catalog_book = await catalog.get_book_by_id(sanity_id)
            except CatalogAPIError as e:
                logger.warning(
                    "Catalog lookup failed, creating minimal book projection",
                    extra={"sanity_id": sanity_id, "error": str(e)},
                )

        if catalog_book is not None:
            return self.upsert_from_catalog(catalog_book)

        logger.info("Creating book projection without catalog data", extra={"sanity_id": sanity_id})
        return self.upsert(sanity_id=sanity_id, title=fallback_title or sanity_id)
