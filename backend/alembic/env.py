"""Alembic environment for the pipeline schema. The URL comes from bizzybee settings, not alembic.ini."""
import os
import sys
from logging.config import fileConfig

BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, BACKEND_DIR)
os.chdir(BACKEND_DIR)

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from bizzybee.config import settings
from bizzybee.database import database_url, is_sqlite_url
from bizzybee.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def migration_url():
    """Migrations always run on a sync driver."""
    if database_url.drivername == "postgresql":
        return database_url.set(drivername="postgresql+psycopg")
    return database_url


def run_migrations_offline():
    context.configure(
        # render_as_string keeps the real password; str(URL) masks it
        url=migration_url().render_as_string(hide_password=False),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    if is_sqlite_url(database_url):
        connect_args = {"check_same_thread": False}
    elif settings.database_transaction_pooler:
        connect_args = {"prepare_threshold": None}
    else:
        connect_args = {}
    engine = create_engine(migration_url(), poolclass=NullPool, connect_args=connect_args)
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # SQLite cannot ALTER most constraints in place
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
