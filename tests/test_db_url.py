from salary_advance.db.url import normalize_database_url


def test_plain_postgres_scheme_moves_to_asyncpg() -> None:
    url = normalize_database_url("postgres://lender:pw@db:5432/advances")
    assert url == "postgresql+asyncpg://lender:pw@db:5432/advances"


def test_sslmode_is_translated_for_asyncpg() -> None:
    url = normalize_database_url("postgresql://lender:pw@db/advances?sslmode=require")
    assert url == "postgresql+asyncpg://lender:pw@db/advances?ssl=require"


def test_asyncpg_url_is_left_alone() -> None:
    url = "postgresql+asyncpg://lender:pw@db/advances"
    assert normalize_database_url(url) == url
