from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from database import Base, create_db_engine, make_session_factory
from main import create_app


def make_client() -> TestClient:
    engine = create_db_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return TestClient(create_app(make_session_factory(engine)))


def _household(client: TestClient) -> dict:
    household = client.post("/api/households", json={"name": "Casa"}).json()
    ana = client.post(
        "/api/users", json={"name": "Ana", "household_id": household["id"]}
    ).json()
    ben = client.post(
        "/api/users", json={"name": "Ben", "household_id": household["id"]}
    ).json()
    food = client.post(
        "/api/categories", json={"name": "Food", "household_id": household["id"]}
    ).json()
    return {"household": household, "ana": ana, "ben": ben, "food": food}


def test_health() -> None:
    client = make_client()
    assert client.get("/api/health").json() == {"status": "ok"}


def test_month_query_is_validated() -> None:
    client = make_client()
    assert client.get("/api/expenses", params={"month": "2024-13"}).status_code == 422
    assert client.get("/api/settlement", params={"month": "24-01"}).status_code == 422


def test_settlement_for_a_month() -> None:
    client = make_client()
    ctx = _household(client)
    ana, ben = ctx["ana"], ctx["ben"]

    for user, amount in ((ana, "600000"), (ben, "400000")):
        response = client.put(
            "/api/incomes",
            json={
                "month": "2024-03",
                "user_id": user["id"],
                "entries": [{"description": "Salary", "amount": amount}],
            },
        )
        assert response.status_code == 200

    response = client.post(
        "/api/expenses",
        json={
            "month": "2024-03",
            "date": "2024-03-10",
            "description": "Groceries",
            "category_id": ctx["food"]["id"],
            "amount": "100000",
            "paid_by_user_id": ana["id"],
        },
    )
    assert response.status_code == 201
    expense = response.json()
    assert expense["amount_ars"] == "100000.00"
    assert expense["household_id"] == ctx["household"]["id"]
    assert expense["fixed"] == {"enabled": False, "template_id": None}
    assert expense["installment"] is None

    settlement = client.get("/api/settlement", params={"month": "2024-03"}).json()
    assert settlement["month"] == "2024-03"
    assert settlement["total_income"] == "1000000.00"
    assert settlement["total_expenses"] == "100000.00"
    assert settlement["expense_ratio"] == "0.100000"
    assert settlement["difference_by_user"] == {
        str(ana["id"]): "40000.00",
        str(ben["id"]): "-40000.00",
    }
    assert settlement["transfer"] == {
        "from_user_id": ben["id"],
        "to_user_id": ana["id"],
        "amount": "40000.00",
    }

    months = client.get("/api/months").json()
    assert months["months"] == ["2024-03"]


def test_settlement_without_income_is_rejected() -> None:
    client = make_client()
    ctx = _household(client)
    client.post(
        "/api/expenses",
        json={
            "month": "2024-03",
            "date": "2024-03-10",
            "description": "Groceries",
            "category_id": ctx["food"]["id"],
            "amount": "100",
            "paid_by_user_id": ctx["ana"]["id"],
        },
    )

    response = client.get("/api/settlement", params={"month": "2024-03"})
    assert response.status_code == 400
    assert "non-positive" in response.json()["detail"]


def test_missing_rate_and_unknown_rows() -> None:
    client = make_client()
    ctx = _household(client)

    response = client.post(
        "/api/expenses",
        json={
            "month": "2024-03",
            "date": "2024-03-10",
            "description": "Flight",
            "category_id": ctx["food"]["id"],
            "amount": "300",
            "currency_code": "USD",
            "paid_by_user_id": ctx["ana"]["id"],
        },
    )
    assert response.status_code == 400
    assert "Missing FX rate for USD in 2024-03" in response.json()["detail"]

    assert client.delete("/api/expenses/999").status_code == 404
    assert (
        client.put("/api/expenses/999", json={"description": "x"}).status_code == 404
    )
    assert client.put(
        "/api/expenses/999", json={"unknown": "field"}
    ).status_code == 422


def test_installment_series_through_the_api() -> None:
    client = make_client()
    ctx = _household(client)

    response = client.post(
        "/api/expenses",
        json={
            "month": "2024-01",
            "date": "2024-01-05",
            "description": "Sofa",
            "category_id": ctx["food"]["id"],
            "paid_by_user_id": ctx["ben"]["id"],
            "installment": {
                "enabled": True,
                "count": 3,
                "entry_mode": "total",
                "total_amount": "100",
            },
        },
    )
    assert response.status_code == 201
    first = response.json()
    assert first["amount_original"] == "33.33"
    assert first["installment"]["number"] == 1
    assert first["installment"]["total"] == 3

    march = client.get(
        "/api/expenses", params={"month": "2024-03", "kind": "installment"}
    ).json()
    [row] = march["expenses"]
    assert row["amount_original"] == "33.34"
    assert row["installment"]["number"] == 3
    assert row["installment"]["created_from_series"] is True

    response = client.delete(
        f"/api/expenses/{row['id']}", params={"apply_scope": "single"}
    )
    assert response.status_code == 204
    march = client.get("/api/expenses", params={"month": "2024-03"}).json()
    assert march["expenses"] == []


def test_archive_requires_replacement_when_in_use() -> None:
    client = make_client()
    ctx = _household(client)
    food = ctx["food"]
    market = client.post(
        "/api/categories",
        json={"name": "Market", "household_id": ctx["household"]["id"]},
    ).json()
    created = client.post(
        "/api/expenses",
        json={
            "month": "2024-03",
            "date": "2024-03-10",
            "description": "Groceries",
            "category_id": food["id"],
            "amount": "100",
            "paid_by_user_id": ctx["ana"]["id"],
        },
    ).json()

    response = client.post(f"/api/categories/{food['id']}/archive")
    assert response.status_code == 400

    response = client.post(
        f"/api/categories/{food['id']}/archive",
        json={"replacement_category_id": market["id"]},
    )
    assert response.status_code == 204

    listed = client.get("/api/expenses", params={"month": "2024-03"}).json()
    assert [e["category_name"] for e in listed["expenses"]] == ["Market"]
    assert listed["expenses"][0]["id"] == created["id"]
    names = [c["name"] for c in client.get("/api/categories").json()]
    assert names == ["Market"]


def test_super_categories_through_the_api() -> None:
    client = make_client()
    ctx = _household(client)
    food = ctx["food"]

    response = client.post("/api/super-categories", json={"name": "Essentials"})
    assert response.status_code == 201
    essentials = response.json()
    assert essentials["slug"] == "essentials"
    assert essentials["is_system"] is False
    assert client.post("/api/super-categories", json={"name": "essentials"}).status_code == 409
    leisure = client.post(
        "/api/super-categories", json={"name": "Leisure", "sort_order": 5}
    ).json()

    response = client.put(
        f"/api/categories/{food['id']}/super-category",
        json={"super_category_id": essentials["id"]},
    )
    assert response.status_code == 200
    assert response.json()["super_category_name"] == "Essentials"
    assert response.json()["super_category_color"] == "#64748b"

    assert client.put(f"/api/super-categories/{leisure['id']}", json={}).status_code == 422
    response = client.put(
        f"/api/super-categories/{essentials['id']}", json={"color": "#f59e0b"}
    )
    assert response.json()["color"] == "#f59e0b"
    assert response.json()["category_count"] == 1

    listed = client.get("/api/super-categories").json()
    assert [item["name"] for item in listed] == ["Leisure", "Essentials"]

    response = client.post(
        f"/api/super-categories/{essentials['id']}/archive",
        json={"replacement_super_category_id": leisure["id"]},
    )
    assert response.status_code == 204
    [category] = client.get("/api/categories").json()
    assert category["super_category_id"] == leisure["id"]
    assert client.post("/api/super-categories/999/archive").status_code == 404


def test_rename_category_through_the_api() -> None:
    client = make_client()
    ctx = _household(client)
    client.post(
        "/api/categories",
        json={"name": "Market", "household_id": ctx["household"]["id"]},
    )

    response = client.put(f"/api/categories/{ctx['food']['id']}", json={"name": "Market"})
    assert response.status_code == 409

    response = client.put(
        f"/api/categories/{ctx['food']['id']}", json={"name": "Groceries"}
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Groceries"
    assert response.json()["expense_count"] == 0
    assert client.put("/api/categories/999", json={"name": "x"}).status_code == 404


def _add_expenses(client: TestClient, ctx: dict) -> None:
    for day, description, amount, user in (
        ("2024-03-01", "Bread", "300", ctx["ana"]),
        ("2024-03-05", "Apples", "100", ctx["ben"]),
        ("2024-03-05", "Cheese", "200", ctx["ana"]),
    ):
        response = client.post(
            "/api/expenses",
            json={
                "month": "2024-03",
                "date": day,
                "description": description,
                "category_id": ctx["food"]["id"],
                "amount": amount,
                "paid_by_user_id": user["id"],
            },
        )
        assert response.status_code == 201


def test_expenses_can_be_sorted() -> None:
    client = make_client()
    ctx = _household(client)
    _add_expenses(client, ctx)

    def descriptions(**params) -> list:
        listed = client.get("/api/expenses", params={"month": "2024-03", **params})
        assert listed.status_code == 200
        return [e["description"] for e in listed.json()["expenses"]]

    assert descriptions() == ["Cheese", "Apples", "Bread"]
    assert descriptions(sort_by="amount_ars", sort_dir="asc") == [
        "Apples",
        "Cheese",
        "Bread",
    ]
    assert descriptions(sort_by="description") == ["Cheese", "Bread", "Apples"]
    assert descriptions(sort_by="paid_by", sort_dir="asc") == [
        "Cheese",
        "Bread",
        "Apples",
    ]
    response = client.get(
        "/api/expenses", params={"month": "2024-03", "sort_by": "colour"}
    )
    assert response.status_code == 400


def test_expenses_are_paged_by_cursor() -> None:
    client = make_client()
    ctx = _household(client)
    _add_expenses(client, ctx)

    first = client.get("/api/expenses", params={"month": "2024-03", "limit": 2}).json()
    assert [e["description"] for e in first["expenses"]] == ["Cheese", "Apples"]
    assert first["pagination"] == {
        "limit": 2,
        "next_cursor": first["expenses"][-1]["id"],
        "has_more": True,
        "total_count": 3,
    }

    second = client.get(
        "/api/expenses",
        params={
            "month": "2024-03",
            "limit": 2,
            "cursor": first["pagination"]["next_cursor"],
            "include_count": False,
        },
    ).json()
    assert [e["description"] for e in second["expenses"]] == ["Bread"]
    assert second["pagination"] == {
        "limit": 2,
        "next_cursor": None,
        "has_more": False,
        "total_count": None,
    }

    unpaged = client.get("/api/expenses", params={"month": "2024-03"}).json()
    assert unpaged["pagination"] is None

    response = client.get(
        "/api/expenses", params={"month": "2024-03", "limit": 2, "cursor": 999}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid cursor"
    response = client.get("/api/expenses", params={"month": "2024-03", "cursor": 1})
    assert response.status_code == 400
