from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from api.database import metadata as target_metadata
from config import DATABASE_URL

config = context.config

# The URL always comes from VCMPRS_DATABASE_URL, never from alembic.ini
config.set_main_option("sqlalchemy.url", DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _configure_and_run(**kwargs) -> None:
    # SQLite can only ALTER tables through batch (copy-and-move) operations
    context.configure(
        target_metadata=target_metadata,
        render_as_batch=DATABASE_URL.startswith("sqlite"),
        **kwargs,
    )
    with context.begin_transaction():
        context.run_migrations()


def main() -> None:
    if context.is_offline_mode():
        # Emit SQL to stdout, no DBAPI connection needed
        _configure_and_run(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
        return

    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        _configure_and_run(connection=connection)


main()
