from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from backend.docpipe.config import get_settings
from backend.docpipe.db.engine import resolve_database_url, to_sync_url
from backend.docpipe.db.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# The ini URL is a placeholder; migrations target the pipeline's own database
config.set_main_option("sqlalchemy.url", to_sync_url(resolve_database_url(get_settings())))


def run_migrations_offline() -> None:
    """Emit the schema SQL to the script output without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a live connection.

    SQLite cannot ALTER most constraints in place, so batch mode is used there.
    """
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
