"""
test_alembic.py — Verify Alembic migration setup and structure.

Checks the baseline migration and env.py by reading their source, and
that the model metadata covers every engine table, without a live
database or Alembic's runtime context.

Called by: pytest
Depends on: alembic/, channelsync.models
"""

import ast
from pathlib import Path

from channelsync.models import Base

ROOT = Path(__file__).parent.parent
MIGRATION_DIR = ROOT / "alembic" / "versions"


def _migration_files():
    files = sorted(MIGRATION_DIR.glob("*.py"))
    assert files, "No migration files found"
    return files


def _assignments(path: Path) -> dict:
    """Module-level constant assignments (revision, down_revision, ...)."""
    tree = ast.parse(path.read_text())
    values = {}
    for node in tree.body:
        target = None
        if isinstance(node, ast.Assign) and isinstance(node.targets[0], ast.Name):
            target = node.targets[0].id
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            target = node.target.id
        if target and node.value is not None:
            try:
                values[target] = ast.literal_eval(node.value)
            except ValueError:
                pass
    return values


def _function_source(path: Path, name: str) -> str:
    source = path.read_text()
    for node in ast.parse(source).body:
        if isinstance(node, ast.FunctionDef) and node.name == name:
            return ast.get_source_segment(source, node)
    raise AssertionError(f"{path.name} has no {name}()")


def test_initial_migration_is_root():
    values = _assignments(_migration_files()[0])
    assert values["revision"] == "001_initial"
    assert values["down_revision"] is None


def test_revisions_form_a_single_chain():
    revisions = {}
    for path in _migration_files():
        values = _assignments(path)
        revisions[values["revision"]] = values["down_revision"]
    heads = set(revisions) - set(revisions.values())
    assert len(heads) == 1


def test_initial_migration_uses_metadata_on_bound_connection():
    path = _migration_files()[0]
    up = _function_source(path, "upgrade")
    down = _function_source(path, "downgrade")
    assert "Base.metadata.create_all" in up
    assert "op.get_bind()" in up
    assert "Base.metadata.drop_all" in down


def test_env_py_targets_model_metadata():
    content = (ROOT / "alembic" / "env.py").read_text()
    assert "from channelsync.models import Base" in content
    assert "target_metadata = Base.metadata" in content
    assert "render_as_batch" in content


def test_metadata_has_every_engine_table():
    expected = {
        "channel_accounts",
        "products",
        "inventory_records",
        "stock_movements",
        "channel_listings",
        "sync_rules",
        "sync_jobs",
        "sync_ledger",
        "orders",
        "order_items",
        "order_status_events",
        "order_automation_rules",
    }
    assert expected <= set(Base.metadata.tables)


def test_no_create_all_in_main():
    """main.py must NOT use create_all — Alembic manages schema."""
    content = (ROOT / "channelsync" / "main.py").read_text()
    assert "create_all" not in content
