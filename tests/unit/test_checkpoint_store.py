"""Unit tests for the SQL-backed checkpoint store."""

from unittest.mock import Mock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from registry_watch.connectors.changes.checkpoint_store import CheckpointStore
from registry_watch.connectors.changes.models import Checkpoint, CheckpointError


@pytest.fixture
def store(sqlite_url):
    store = CheckpointStore(sqlite_url, name="watch")
    yield store
    store.close()


class TestCheckpointStore:
    """Test CheckpointStore."""

    def test_missing_checkpoint_starts_from_zero(self, store):
        """Test a fresh database yields cursor "0"."""
        assert store.get() == Checkpoint(cursor="0", stage=None)

    def test_save_and_get_cursor(self, store):
        """Test a saved cursor is read back."""
        store.save(cursor="100")
        assert store.get().cursor == "100"

    def test_integer_cursor_stored_as_string(self, store):
        """Test integer cursors are stored as strings."""
        store.save(cursor=4321)
        assert store.get().cursor == "4321"

    def test_opaque_cursor_kept_verbatim(self, store):
        """Test opaque CouchDB cursors are stored unchanged."""
        store.save(cursor="5087-g1AAAAHmeJzLYWBg")
        assert store.get().cursor == "5087-g1AAAAHmeJzLYWBg"

    def test_stage_and_cursor_merge(self, store):
        """Saving the stage marker keeps the cursor and vice versa."""
        store.save(cursor="100")
        store.save(stage="watch")
        assert store.get() == Checkpoint(cursor="100", stage="watch")

        store.save(cursor="101")
        assert store.get() == Checkpoint(cursor="101", stage="watch")

    def test_stage_only_row_starts_from_zero(self, store):
        """Test a stage marker alone does not move the cursor."""
        store.save(stage="watch")
        assert store.get() == Checkpoint(cursor="0", stage="watch")

    def test_save_requires_a_field(self, store):
        """Test save with neither cursor nor stage raises ValueError."""
        with pytest.raises(ValueError, match="needs a cursor or a stage"):
            store.save()

    def test_checkpoints_isolated_by_name(self, sqlite_url, store):
        """Test checkpoints with different names do not collide."""
        other = CheckpointStore(sqlite_url, name="other")
        try:
            store.save(cursor="100")
            other.save(cursor="7")
            assert store.get().cursor == "100"
            assert other.get().cursor == "7"
        finally:
            other.close()

    def test_persisted_across_instances(self, sqlite_url, store):
        """Test a new store instance sees earlier saves."""
        store.save(cursor="250")
        reopened = CheckpointStore(sqlite_url, name="watch")
        try:
            assert reopened.get().cursor == "250"
        finally:
            reopened.close()

    def test_save_failure_raises_checkpoint_error(self, store):
        """Test database errors on save become CheckpointError."""
        session = Mock()
        session.begin.side_effect = SQLAlchemyError("database is down")
        store.SessionLocal = Mock(return_value=session)

        with pytest.raises(CheckpointError, match="database is down"):
            store.save(cursor="100")
        assert session.close.called

    def test_load_failure_raises_checkpoint_error(self, store):
        """Test database errors on load become CheckpointError."""
        session = Mock()
        session.query.side_effect = SQLAlchemyError("bad query")
        store.SessionLocal = Mock(return_value=session)

        with pytest.raises(CheckpointError, match="bad query"):
            store.get()

    def test_unreachable_database(self, tmp_path):
        """Test an unusable database URL fails at construction."""
        with pytest.raises(CheckpointError, match="Database connection failed"):
            CheckpointStore(f"sqlite:///{tmp_path / 'missing' / 'watch.db'}")
