import pytest

from lending import database
from lending.errors import ActiveLoansOutstanding, Forbidden, NotFoundError, ValidationError
from lending.models import UserPatch


def test_create_user_defaults(accounts):
    user = accounts.create_user("Grace", "Hopper", email="grace@example.com")
    assert user.current_borrowed == 0
    assert user.numbers_of_books_checked_out == 0
    assert user.is_admin is False


def test_duplicate_email_rejected(accounts, user):
    with pytest.raises(ValidationError):
        accounts.create_user("Someone", "Else", email="ada@example.com")


def test_update_profile_only_touches_patched_fields(accounts, user):
    updated = accounts.update_profile(user.id, user.id, UserPatch(surname="King"))
    assert updated.surname == "King"
    assert updated.name == "Ada"
    assert updated.email == "ada@example.com"


@pytest.mark.parametrize("patch", [
    UserPatch(name=""),
    UserPatch(surname="   "),
    UserPatch(email=" "),
])
def test_blank_profile_fields_rejected(accounts, user, patch):
    with pytest.raises(ValidationError):
        accounts.update_profile(user.id, user.id, patch)
    assert accounts.get_user(user.id) == user


def test_profile_patch_is_trimmed(accounts, user):
    updated = accounts.update_profile(user.id, user.id, UserPatch(name="  Augusta ", avatar_url="http://img/a.png"))
    assert updated.name == "Augusta"
    assert updated.avatar_url == "http://img/a.png"

    cleared = accounts.update_profile(user.id, user.id, UserPatch(avatar_url=""))
    assert cleared.avatar_url is None


def test_empty_patch_is_noop(accounts, user):
    assert UserPatch().is_empty()
    assert accounts.update_profile(user.id, user.id, UserPatch()) == user


def test_update_other_profile_forbidden(accounts, user):
    other = accounts.create_user("Grace", "Hopper")
    with pytest.raises(Forbidden):
        accounts.update_profile(other.id, user.id, UserPatch(name="Mallory"))


def test_delete_own_account_with_active_loan_refused(lib, accounts, user, make_book):
    lib.borrow(user.id, make_book().id)
    with pytest.raises(ActiveLoansOutstanding):
        accounts.delete_account(user.id, user.id)
    assert accounts.get_user(user.id) is not None


def test_admin_cannot_delete_user_holding_books(lib, accounts, user, make_book):
    admin = accounts.create_user("Root", "Admin", is_admin=True)
    lib.borrow(user.id, make_book().id)
    with pytest.raises(ActiveLoansOutstanding):
        accounts.delete_account(admin.id, user.id)


def test_delete_own_account_after_returning(lib, accounts, user, make_book):
    book = make_book("Solaris")
    lib.borrow(user.id, book.id)
    lib.return_book(user.id, book.id)

    accounts.delete_account(user.id, user.id)

    assert accounts.get_user(user.id) is None
    # The ledger row survives with its snapshot
    with database.connection() as conn:
        row = conn.execute("SELECT user_id, user_first_name, status FROM borrowed_books").fetchone()
    assert row["user_id"] is None
    assert row["user_first_name"] == "Ada"
    assert row["status"] == "returned"


def test_admin_can_delete_other_user(accounts, user):
    admin = accounts.create_user("Root", "Admin", is_admin=True)
    accounts.delete_account(admin.id, user.id)
    assert accounts.get_user(user.id) is None


def test_non_admin_cannot_delete_other_user(accounts, user):
    other = accounts.create_user("Grace", "Hopper")
    with pytest.raises(Forbidden):
        accounts.delete_account(other.id, user.id)


def test_delete_with_unknown_requester(accounts, user):
    with pytest.raises(NotFoundError):
        accounts.delete_account("ghost", user.id)
