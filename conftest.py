import pytest

from lending.accounts import Accounts
from lending.library import Library


@pytest.fixture
def lib(tmp_path, request):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    lib.close()


@pytest.fixture
def accounts(lib):
    return Accounts(lib)


@pytest.fixture
def user(accounts):
    return accounts.create_user("Ada", "Lovelace", email="ada@example.com")


@pytest.fixture
def make_book(lib):
    def _make(title="Solaris", authors=(("Stanislaw", "Lem"),)):
        return lib.catalog.add_book(title, list(authors))
    return _make
