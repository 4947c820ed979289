"""The hand-written initial revision must build the same schema the models declare."""

import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from storefront.extensions import db


REVISION = (
    Path(__file__).resolve().parents[1]
    / "migrations" / "versions" / "a1b2c3d4e5f6_initial_storefront_schema.py"
)


def _load_revision():
    spec = importlib.util.spec_from_file_location("initial_storefront_schema", REVISION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _schema(conn):
    inspector = sa.inspect(conn)
    tables = {}
    for name in inspector.get_table_names():
        tables[name] = {
            "columns": {c["name"] for c in inspector.get_columns(name)},
            "indexes": {i["name"] for i in inspector.get_indexes(name)},
        }
    return tables


def _run(conn, step):
    context = MigrationContext.configure(conn)
    with Operations.context(context):
        step()


def test_upgrade_matches_models(app):
    revision = _load_revision()
    assert revision.down_revision is None

    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        _run(conn, revision.upgrade)
        migrated = _schema(conn)

    expected = {
        table.name: {
            "columns": {c.name for c in table.columns},
            "indexes": {i.name for i in table.indexes},
        }
        for table in db.metadata.sorted_tables
    }
    assert migrated == expected


def test_downgrade_drops_everything(app):
    revision = _load_revision()
    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        _run(conn, revision.upgrade)
        _run(conn, revision.downgrade)
        assert sa.inspect(conn).get_table_names() == []
