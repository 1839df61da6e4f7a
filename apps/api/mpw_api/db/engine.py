"""Database engine builder.

Policy:
- NullPool (client-side pooling disabled); the Supabase pooler in transaction
  mode does the pooling
- pool_pre_ping=True
- application_name tagged on PostgreSQL connections
"""

import logging
import re
from typing import Any, Optional

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from mpw_api.config import env

logger = logging.getLogger(__name__)

APPLICATION_NAME = "mercadopago-webhooks"


def mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:/@]+):([^@]+)@", r"://\1:***@", url)


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, reads DATABASE_URL (fallback
            SUPABASE_DB_URL).

    Raises:
        ValueError: If no database URL is configured.
    """
    url = database_url or env.get_database_url()
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    connect_args: dict[str, Any] = {}
    if url.startswith("postgresql"):
        connect_args["application_name"] = APPLICATION_NAME

    engine = create_engine(
        url,
        poolclass=NullPool,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    logger.info("DB_ENGINE_BUILT", extra={"url": mask_password(url), "pool": engine.pool.__class__.__name__})
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Sessionmaker with autocommit=False, autoflush=False, expire_on_commit=False.

    Rows are mapped to pydantic records after commit, so attributes must
    stay loaded.
    """
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
