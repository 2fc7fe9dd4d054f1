import logging

from lending_library.accounts import AccountStore
from lending_library.config import settings
from lending_library.library import Library

logger = logging.getLogger(__name__)

SAMPLE_BOOKS = [
    {
        "title": "The Great Gatsby",
        "author": "F. Scott Fitzgerald",
        "isbn": "978-0-7432-7356-5",
        "genre": "Classic Literature",
        "description": "A classic American novel set in the Jazz Age.",
        "published_year": 1925,
        "total_copies": 5,
    },
    {
        "title": "To Kill a Mockingbird",
        "author": "Harper Lee",
        "isbn": "978-0-06-112008-4",
        "genre": "Classic Literature",
        "description": "A gripping tale of racial injustice and childhood innocence.",
        "published_year": 1960,
        "total_copies": 3,
    },
    {
        "title": "1984",
        "author": "George Orwell",
        "isbn": "978-0-452-28423-4",
        "genre": "Dystopian Fiction",
        "description": "A dystopian social science fiction novel.",
        "published_year": 1949,
        "total_copies": 4,
    },
    {
        "title": "Pride and Prejudice",
        "author": "Jane Austen",
        "isbn": "978-0-14-143951-8",
        "genre": "Romance",
        "description": "A romantic novel of manners written by Jane Austen.",
        "published_year": 1813,
        "total_copies": 6,
    },
    {
        "title": "The Catcher in the Rye",
        "author": "J.D. Salinger",
        "isbn": "978-0-316-76948-0",
        "genre": "Coming of Age",
        "description": "A novel about teenage rebellion and angst.",
        "published_year": 1951,
        "total_copies": 2,
    },
]


def seed_admin_user(accounts: AccountStore):
    admin = accounts.ensure_admin("Library Administrator", settings.admin_email, settings.admin_password)
    logger.info("Admin account available: %s", admin.email)
    return admin


def seed_sample_books(library: Library, admin_id: str) -> int:
    """Insert the sample titles into an empty catalog; returns how many were added."""
    if library.count_books() > 0:
        return 0
    for data in SAMPLE_BOOKS:
        library.add_book(data, added_by=admin_id)
    logger.info("Seeded %d sample books", len(SAMPLE_BOOKS))
    return len(SAMPLE_BOOKS)


def seed_database(library: Library, accounts: AccountStore) -> int:
    admin = seed_admin_user(accounts)
    return seed_sample_books(library, admin.id)
