import pytest
from fastapi.testclient import TestClient

from lending.api import create_app
from lending.config import settings

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path, request):
    # Per-test database picked up by the app's lifespan
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    app = create_app(db_file=db_file)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def reader(client):
    return client.app.state.accounts.create_user("Ada", "Lovelace")


@pytest.fixture
def book(client):
    return client.app.state.library.catalog.add_book("Solaris", [("Stanislaw", "Lem")])


def auth(user):
    return {"X-User-Id": user.id}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["db"] is True


def test_borrow_and_return_flow(client, reader, book):
    response = client.post("/rent", json={"bookId": book.id}, headers=auth(reader))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["bookId"] == book.id
    assert "borrowedAt" in data and "dueDate" in data

    response = client.get("/rent/borrowed", headers=auth(reader))
    assert response.status_code == 200
    [loan] = response.json()
    assert loan["title"] == "Solaris"
    assert loan["author"] == "Stanislaw Lem"

    response = client.post("/rent/return", json={"book_id": book.id}, headers=auth(reader))
    assert response.status_code == 200
    assert response.json() == {"message": "Book returned successfully."}

    response = client.get("/rent/borrowed", headers=auth(reader))
    assert response.json() == {"message": "You have not borrowed any books yet."}

    history = client.get("/rent/history", headers=auth(reader)).json()
    assert [entry["status"] for entry in history] == ["returned"]
    assert history[0]["returned_at"] is not None


def test_borrow_requires_identity(client, book):
    response = client.post("/rent", json={"bookId": book.id})
    assert response.status_code == 401
    assert response.json() == {
        "error": "unauthenticated",
        "message": "Unauthorized: User not found in token.",
        "retryable": False,
    }


@pytest.mark.parametrize("payload", [{}, {"bookId": "1"}, {"bookId": 0}, {"bookId": 2**70}, {"title": "x"}])
def test_borrow_invalid_body(client, reader, payload):
    response = client.post("/rent", json=payload, headers=auth(reader))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_borrow_unavailable_book(client, reader, book):
    other = client.app.state.accounts.create_user("Grace", "Hopper")
    client.post("/rent", json={"bookId": book.id}, headers=auth(other))

    response = client.post("/rent", json={"bookId": book.id}, headers=auth(reader))
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "unavailable"
    assert body["retryable"] is True


def test_borrow_limit_exceeded(client, reader):
    catalog = client.app.state.library.catalog
    for i in range(5):
        book = catalog.add_book(f"Book {i}")
        assert client.post("/rent", json={"bookId": book.id}, headers=auth(reader)).status_code == 200

    extra = catalog.add_book("One too many")
    response = client.post("/rent", json={"bookId": extra.id}, headers=auth(reader))
    assert response.status_code == 403
    assert response.json()["error"] == "limit_exceeded"


def test_borrow_unknown_book_and_user(client, reader):
    response = client.post("/rent", json={"bookId": 999}, headers=auth(reader))
    assert response.status_code == 404
    assert response.json()["resource"] == "book"

    response = client.post("/rent", json={"bookId": 999}, headers={"X-User-Id": "ghost"})
    assert response.status_code == 404
    assert response.json()["resource"] == "user"


def test_return_without_loan(client, reader):
    response = client.post("/rent/return", json={"bookId": 99}, headers=auth(reader))
    assert response.status_code == 400
    assert response.json()["error"] == "no_active_loan"


def test_admin_book_routes(client, reader):
    headers = {"X-API-Key": settings.api_key}
    response = client.post("/books", json={"title": "Dune", "authors": [{"first_name": "Frank", "last_name": "Herbert"}]},
                           headers=headers)
    assert response.status_code == 201
    book_id = response.json()["id"]

    assert client.get(f"/books/{book_id}").json()["author"] == "Frank Herbert"

    client.post("/rent", json={"bookId": book_id}, headers=auth(reader))
    response = client.delete(f"/books/{book_id}", headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "unavailable"

    client.post("/rent/return", json={"bookId": book_id}, headers=auth(reader))
    assert client.delete(f"/books/{book_id}", headers=headers).status_code == 200
    assert client.get(f"/books/{book_id}").status_code == 404


def test_add_book_with_invalid_api_key(client):
    response = client.post("/books", json={"title": "Dune"}, headers={"X-API-Key": "invalid-key"})
    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "invalid_api_key"
    assert body["retryable"] is False
    assert "message" in body


def test_update_and_delete_user(client, reader, book):
    response = client.put(f"/users/{reader.id}", json={"name": "Augusta"}, headers=auth(reader))
    assert response.status_code == 200
    assert response.json()["name"] == "Augusta"
    assert response.json()["surname"] == "Lovelace"

    client.post("/rent", json={"bookId": book.id}, headers=auth(reader))
    response = client.delete(f"/users/{reader.id}", headers=auth(reader))
    assert response.status_code == 403
    assert response.json()["error"] == "active_loans"

    client.post("/rent/return", json={"bookId": book.id}, headers=auth(reader))
    response = client.delete(f"/users/{reader.id}", headers=auth(reader))
    assert response.status_code == 200


def test_update_other_user_forbidden(client, reader):
    other = client.app.state.accounts.create_user("Grace", "Hopper")
    response = client.put(f"/users/{reader.id}", json={"name": "Mallory"}, headers=auth(other))
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_out_of_range_book_id_in_path(client):
    assert client.get(f"/books/{2**70}").status_code == 400
    response = client.delete(f"/books/{2**70}", headers={"X-API-Key": settings.api_key})
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_blank_profile_update_rejected(client, reader):
    response = client.put(f"/users/{reader.id}", json={"name": "", "surname": "   "}, headers=auth(reader))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"
    assert client.app.state.accounts.get_user(reader.id).name == "Ada"


def test_list_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "No books found"}

    headers = {"X-API-Key": settings.api_key}
    client.post("/books", json={"title": "Dune", "authors": [{"first_name": "Frank", "last_name": "Herbert"}],
                                "genres": ["Science Fiction"]}, headers=headers)
    client.post("/books", json={"title": "Beloved"}, headers=headers)

    body = client.get("/books", params={"page": 1, "limit": 1}).json()
    assert body["page"] == 1 and body["limit"] == 1
    assert [b["title"] for b in body["data"]] == ["Beloved"]

    [dune] = client.get("/books", params={"page": 2, "limit": 1}).json()["data"]
    assert dune["authors"] == ["Frank Herbert"]
    assert dune["genres"] == ["Science Fiction"]


def test_list_books_bad_paging(client):
    assert client.get("/books", params={"page": 0}).status_code == 400
    assert client.get("/books", params={"limit": 1000}).status_code == 400
