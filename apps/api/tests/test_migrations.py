"""
Migration smoke test: upgrade to head and back down on a scratch SQLite file.
"""
from alembic import command
from sqlalchemy import create_engine, inspect

from core.database import Base
from run_migrations import get_alembic_config

TABLES = {"quiz_attempt", "quiz_answer", "mood_checkin", "insight_cache", "nudge_rule", "nudge_hit"}


def _config(url):
    cfg = get_alembic_config()
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def test_upgrade_creates_every_model_table(tmp_path):
    url = f"sqlite:///{tmp_path / 'migrations.db'}"
    command.upgrade(_config(url), "head")

    inspector = inspect(create_engine(url))
    names = set(inspector.get_table_names())
    assert TABLES <= names
    assert set(Base.metadata.tables) == TABLES

    unique = inspector.get_unique_constraints("insight_cache")
    assert any(set(u["column_names"]) == {"owner_id", "kind"} for u in unique)


def test_upgrade_columns_match_models(tmp_path):
    url = f"sqlite:///{tmp_path / 'columns.db'}"
    command.upgrade(_config(url), "head")

    inspector = inspect(create_engine(url))
    for name, table in Base.metadata.tables.items():
        migrated = {c["name"] for c in inspector.get_columns(name)}
        assert migrated == set(table.columns.keys()), name


def test_downgrade_drops_everything(tmp_path):
    url = f"sqlite:///{tmp_path / 'down.db'}"
    cfg = _config(url)
    command.upgrade(cfg, "head")
    command.downgrade(cfg, "base")

    names = set(inspect(create_engine(url)).get_table_names())
    assert not (TABLES & names)
