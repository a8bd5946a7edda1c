from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError
import logging
from .models import db

logger = logging.getLogger('log')

# 旧库缺少的列：(表, 列, DDL)
_COLUMNS = [
    ("orders", "submission_key", "ALTER TABLE orders ADD COLUMN submission_key VARCHAR(64) NULL"),
    ("orders", "points_awarded_at", "ALTER TABLE orders ADD COLUMN points_awarded_at BIGINT NULL"),
    ("point_transactions", "balance_after", "ALTER TABLE point_transactions ADD COLUMN balance_after INTEGER NULL"),
    ("wallet_transactions", "balance_after", "ALTER TABLE wallet_transactions ADD COLUMN balance_after NUMERIC(12, 2) NULL"),
]


def run_auto_migrations():
    """
    简易的自动迁移脚本，用于开发环境自动修补 schema
    :return: 本次补上的列
    """
    added = []
    try:
        inspector = inspect(db.engine)
        for table, column, ddl in _COLUMNS:
            if not inspector.has_table(table):
                continue
            columns = [c['name'] for c in inspector.get_columns(table)]
            if column in columns:
                continue
            logger.info("Migrating: adding %s.%s", table, column)
            with db.engine.connect() as conn:
                conn.execute(text(ddl))
                if (table, column) == ("orders", "submission_key"):
                    conn.execute(text("CREATE INDEX ix_orders_submission_key ON orders (submission_key)"))
                conn.commit()
            added.append(f"{table}.{column}")
    except SQLAlchemyError as e:
        logger.warning("Auto migration failed: %s", e)
    return added
