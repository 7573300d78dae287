import os
import tempfile
from pathlib import Path

_DB_FILE = Path(tempfile.gettempdir()) / f"inventory_sync_tests_{os.getpid()}.db"
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", f"sqlite:///{_DB_FILE}")

import pytest  # noqa: E402

from backend.app.db.models import Base  # noqa: E402
from backend.app.db.session import ENGINE, session_scope  # noqa: E402

Base.metadata.drop_all(ENGINE)
Base.metadata.create_all(ENGINE)


def truncate_tables() -> None:
    with session_scope() as session:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())


@pytest.fixture(autouse=True)
def _clean_database():
    truncate_tables()
    yield
