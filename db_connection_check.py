import sys

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from erp_engine import models  # noqa: F401  registers the tables on Base.metadata
from erp_engine.config import settings
from erp_engine.db import Base, make_engine
from erp_engine.locks import lock_key


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = make_engine(database_url)
    try:
        if "--create-schema" in sys.argv[1:]:
            Base.metadata.create_all(bind=engine)
            print("schema created")
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            if engine.dialect.name == "postgresql":
                conn.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": lock_key("connection-check")})
                print("advisory locks OK")
            tables = inspect(conn).get_table_names()
        print("DB connection OK")
        print(f"tables: {', '.join(sorted(tables)) or '(none, rerun with --create-schema)'}")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
