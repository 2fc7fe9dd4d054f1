import pytest

from lending_library.database import Database
from lending_library.errors import (
    Conflict,
    DuplicateCode,
    EntryNotFound,
    HasActiveLoans,
    ValidationFailed,
)
from lending_library.library import Library


def test_add_list_and_find(library):
    assert library.list_books()["books"] == []

    book = library.add_book({"title": "Ulysses", "author": "James Joyce", "isbn": "9780199535675"})

    assert book.id
    assert book.total_copies == 1
    assert book.available_copies == 1
    assert library.find_book(book.id).title == "Ulysses"
    assert library.find_by_isbn("9780199535675").id == book.id
    assert library.list_books()["pagination"]["total"] == 1


def test_add_duplicate_isbn(library):
    library.add_book({"title": "Test Book", "author": "Test Author", "isbn": "1234567890"})

    with pytest.raises(DuplicateCode, match="ISBN already exists"):
        library.add_book({"title": "Other", "author": "Someone", "isbn": "1234567890"})

    assert library.count_books() == 1


def test_add_collects_every_validation_error(library):
    with pytest.raises(ValidationFailed) as excinfo:
        library.add_book({"title": "", "author": "X", "isbn": "abc", "total_copies": 0, "published_year": 3000})

    errors = excinfo.value.errors
    assert len(errors) == 5
    assert library.count_books() == 0


def test_persistence(db):
    Library(db).add_book({"title": "Sapiens", "author": "Yuval Noah Harari", "isbn": "9780099590088"})

    # A new service over the same file sees the data
    again = Library(db)
    assert again.find_by_isbn("9780099590088").title == "Sapiens"


def test_remove(library):
    book = library.add_book({"title": "Test", "author": "Author", "isbn": "0306406152"})
    library.remove_book(book.id)

    assert library.find_book(book.id) is None
    with pytest.raises(EntryNotFound):
        library.remove_book(book.id)


def test_remove_with_active_loans(library, lending, member, make_book):
    book = make_book(total_copies=2)
    lending.borrow(book.id, member.id)

    with pytest.raises(HasActiveLoans):
        library.remove_book(book.id)

    lending.return_book(book.id, member.id)
    library.remove_book(book.id)
    assert library.find_book(book.id) is None


def test_update_book(library):
    book = library.add_book({"title": "Old Title", "author": "Old Author", "isbn": "1112223334"})
    updated = library.update_book(book.id, {"title": "New   Title", "genre": "Drama"})

    assert updated.title == "New Title"
    assert updated.genre == "Drama"
    assert updated.author == "Old Author"
    assert library.get_book(book.id).version == book.version + 1


def test_update_total_copies_shifts_available(library, lending, member, make_book):
    book = make_book(total_copies=3)
    lending.borrow(book.id, member.id)

    updated = library.update_book(book.id, {"total_copies": 5})
    assert (updated.total_copies, updated.available_copies) == (5, 4)

    with pytest.raises(ValidationFailed):
        library.update_book(book.id, {"total_copies": 0})

    shrunk = library.update_book(book.id, {"total_copies": 1})
    assert (shrunk.total_copies, shrunk.available_copies, shrunk.is_available) == (1, 0, False)


def test_update_to_existing_isbn(library):
    library.add_book({"title": "A", "author": "Author A", "isbn": "1234567890"})
    other = library.add_book({"title": "B", "author": "Author B", "isbn": "0306406152"})

    with pytest.raises(DuplicateCode):
        library.update_book(other.id, {"isbn": "1234567890"})


def test_update_ignores_ledger_fields(library, make_book):
    book = make_book()
    with pytest.raises(ValidationFailed, match="Nothing to update"):
        library.update_book(book.id, {"available_copies": 99, "current_borrowers": []})


def test_update_missing_book(library):
    with pytest.raises(EntryNotFound):
        library.update_book("missing", {"title": "Whatever"})


def test_pagination_newest_first(library, make_book):
    made = [make_book() for _ in range(5)]

    first = library.list_books(page=1, limit=2)
    assert [b.id for b in first["books"]] == [made[4].id, made[3].id]
    assert first["pagination"] == {"current": 1, "pages": 3, "total": 5, "hasNext": True, "hasPrev": False}

    last = library.list_books(page=3, limit=2)
    assert [b.id for b in last["books"]] == [made[0].id]
    assert last["pagination"]["hasNext"] is False
    assert last["pagination"]["hasPrev"] is True


def test_list_filters(library, lending, member):
    dune = library.add_book({"title": "Dune", "author": "Frank Herbert", "isbn": "9780441013593",
                             "genre": "Science Fiction"})
    library.add_book({"title": "Emma", "author": "Jane Austen", "isbn": "9780141439587", "genre": "Romance"})
    lending.borrow(dune.id, member.id)

    assert [b.title for b in library.list_books(search="austen")["books"]] == ["Emma"]
    assert [b.title for b in library.list_books(genre="science")["books"]] == ["Dune"]
    assert [b.title for b in library.list_books(availability="unavailable")["books"]] == ["Dune"]
    assert [b.title for b in library.list_available()["books"]] == ["Emma"]


def test_search_books(library):
    library.add_book({"title": "Dune", "author": "Frank Herbert", "isbn": "9780441013593"})
    library.add_book({"title": "Emma", "author": "Jane Austen", "isbn": "9780141439587"})

    assert [b.title for b in library.search_books("herb")] == ["Dune"]
    assert [b.title for b in library.search_books("9780141439587")] == ["Emma"]
    assert library.search_books("nothing like this") == []

    with pytest.raises(ValidationFailed):
        library.search_books("   ")


def test_statistics(library, lending, member, make_book):
    first = make_book(total_copies=3, author="Ann Author")
    make_book(total_copies=2, author="Ben Author")
    lending.borrow(first.id, member.id)

    assert library.get_statistics() == {
        "total_books": 2,
        "unique_authors": 2,
        "total_copies": 5,
        "available_copies": 4,
        "active_loans": 1,
    }


def test_update_while_locked_gives_conflict(db, db_file, library, make_book, monkeypatch):
    book = make_book(total_copies=1, title="Before")
    monkeypatch.setattr("lending_library.library.settings.lending_max_retries", 2)
    busy = Library(Database(db_file, timeout=0.2))

    blocker = db.connect()
    try:
        blocker.execute("BEGIN IMMEDIATE")
        with pytest.raises(Conflict):
            busy.update_book(book.id, {"title": "After"})
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert library.get_book(book.id).title == "Before"
    assert busy.update_book(book.id, {"title": "After"}).title == "After"
