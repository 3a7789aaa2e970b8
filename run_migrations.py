"""
Run data migrations before the app starts.
Deploy startCommand runs: python run_migrations.py && uvicorn app.main:app ...
Schema changes live in alembic/ (run on app startup); these scripts migrate data.

Add new migration modules to MIGRATIONS in order.
Migrations must be idempotent (safe to run multiple times).
"""
import importlib.util
import os
import sys

from alembic import command
from alembic.config import Config

# Each must define run_migration() and be idempotent.
MIGRATIONS = [
    "grandfather_existing_users_migration",
]


def upgrade_schema():
    """Bring the schema to head first; data migrations assume the latest tables."""
    root = os.path.dirname(os.path.abspath(__file__))
    cfg = Config(os.path.join(root, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(root, "alembic"))
    command.upgrade(cfg, "head")


def run():
    root = os.path.dirname(os.path.abspath(__file__))
    os.chdir(root)
    upgrade_schema()
    ran = 0
    for name in MIGRATIONS:
        path = os.path.join(root, f"{name}.py")
        if not os.path.exists(path):
            print(f"⚠️ Skip {name}: file not found")
            continue
        print(f"▶ Running {name}...")
        spec = importlib.util.spec_from_file_location(name, path)
        mod = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(mod)
        if not hasattr(mod, "run_migration"):
            print(f"⚠️ No run_migration() in {name}")
            continue
        ok = mod.run_migration()
        if not ok:
            print(f"❌ {name} failed")
            return False
        ran += 1
    print(f"✅ Migrations completed ({ran} ran)")
    return True


if __name__ == "__main__":
    success = run()
    sys.exit(0 if success else 1)
