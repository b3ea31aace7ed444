from logging.config import fileConfig

from sqlalchemy import create_engine, pool, text

from alembic import context
from src.config.settings import DatabaseSettings  # loads .env on import
from src.constants import DB_SCHEMA
from src.store.models import Base

# Alembic Config object
config = context.config

# Python logging from ini file
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Same DATABASE_* settings as the application, with the sync psycopg driver
_db = DatabaseSettings()
DATABASE_URL = (
    f"postgresql+psycopg://{_db.user}:{_db.password}@{_db.host}:{_db.port}/{_db.name}"
)

target_metadata = Base.metadata


def include_name(name, type_, parent_names):
    """Only include objects from the bugtracker schema."""
    if type_ == "schema":
        return name == DB_SCHEMA
    return True


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=DB_SCHEMA,
        include_schemas=True,
        include_name=include_name,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(DATABASE_URL, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # Ensure schema exists
        connection.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        connection.commit()

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=DB_SCHEMA,
            include_schemas=True,
            include_name=include_name,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
