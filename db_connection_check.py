import argparse
from typing import Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from loyalty_admin import models  # noqa: F401  registers the tables on Base.metadata
from loyalty_admin.config import settings
from loyalty_admin.db import Base


def main(database_url: Optional[str] = None, create_tables: bool = False) -> bool:
    database_url = database_url or settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if create_tables:
            Base.metadata.create_all(bind=engine)
            print("Tables created")
        missing = sorted(set(Base.metadata.tables) - set(inspect(engine).get_table_names()))
        if missing:
            print(f"Missing tables: {', '.join(missing)}")
        return not missing
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return False
    finally:
        engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Check the loyalty admin database.")
    parser.add_argument("--database-url", default=None)
    parser.add_argument("--create-tables", action="store_true")
    args = parser.parse_args()
    raise SystemExit(0 if main(args.database_url, args.create_tables) else 1)
