from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

import rto_recon.models  # noqa: F401  registers the tables on Base.metadata
from rto_recon.config import settings
from rto_recon.db import Base, build_engine


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = build_engine(database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            existing = set(inspect(conn).get_table_names())
        print("DB connection OK")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return

    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        print(f"Missing tables: {', '.join(missing)}")
    else:
        print("All tables present")


if __name__ == "__main__":
    main()
