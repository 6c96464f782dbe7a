"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

_PACKAGE_DIR = Path(__file__).resolve().parents[1]
_CHECKOUT_DIR = Path(__file__).resolve().parents[3]


def migration_paths() -> tuple[Path, Path]:
    """Locate `alembic.ini` and the script directory.

    Wheels carry both under `taskplane/_migrations`; a source checkout keeps
    them at the repository root.
    """

    for root, script_dir in (
        (_PACKAGE_DIR / "_migrations", _PACKAGE_DIR / "_migrations" / "alembic"),
        (_CHECKOUT_DIR, _CHECKOUT_DIR / "alembic"),
    ):
        alembic_ini = root / "alembic.ini"
        if alembic_ini.is_file() and (script_dir / "env.py").is_file():
            return alembic_ini, script_dir
    raise FileNotFoundError("Alembic migrations not found next to the package or checkout.")


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database."""

    alembic_ini, script_dir = migration_paths()
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(script_dir))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    command.upgrade(config, "head")
