#!/usr/bin/env python
"""Report row counts of the lock server tables.

Reads the same configuration as the server (config.json plus NAMEDLOCK_*
environment overrides) to find the database.
"""
import sys

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from namedlock.config import ConfigurationError, load_config


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    try:
        cfg = load_config(argv[0] if argv else None)
    except ConfigurationError as e:
        print("ERROR:", e)
        return 1

    engine = create_engine(cfg.database_url, future=True)
    try:
        with engine.connect() as conn:
            products = conn.execute(text("SELECT COUNT(*) FROM products")).scalar()
            stock = conn.execute(text("SELECT COALESCE(SUM(quantity), 0) FROM products")).scalar()
            orders = conn.execute(
                text("SELECT status, COUNT(*) FROM orders GROUP BY status ORDER BY status")
            ).all()
            cycles = conn.execute(text("SELECT COUNT(*) FROM lock_history")).scalar()
            still_open = conn.execute(
                text("SELECT COUNT(*) FROM lock_history WHERE status = 'acquired'")
            ).scalar()
    except SQLAlchemyError as e:
        print("Error querying lock server tables:", e)
        return 1
    finally:
        engine.dispose()

    print(f"DB: {engine.url.render_as_string(hide_password=True)}")
    print(f"Products: {products} (total stock {stock})")
    for status, count in orders:
        print(f"Orders {status}: {count}")
    print(f"Lock cycles recorded: {cycles}\nLock cycles without release: {still_open}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
