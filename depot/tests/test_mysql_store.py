"""Tests for MySqlStore with a mocked connection pool."""

from unittest.mock import MagicMock

import mysql.connector
import pytest

from depot.mysql_store import MySqlStore, TABLES
from depot.records import ProcessingRequest, QueueEntry
from depot.statuses import ImageStatus, ResourceStatus


@pytest.fixture
def mock_cursor():
    cursor = MagicMock()
    cursor.rowcount = 1
    return cursor


@pytest.fixture
def mock_connection(mock_cursor):
    connection = MagicMock()
    connection.cursor.return_value = mock_cursor
    return connection


@pytest.fixture
def mysql_store(mocker, config, mock_connection, logger):
    """Fixture providing a MySqlStore whose pool hands out a mocked connection."""
    pool = MagicMock()
    pool.get_connection.return_value = mock_connection
    mocker.patch('depot.mysql_store.pooling.MySQLConnectionPool', return_value=pool)
    return MySqlStore(config, logger)


def executed_sql(cursor):
    return [c.args[0] for c in cursor.execute.call_args_list]


class TestMySqlStore:
    """Tests for MySqlStore."""

    def test_create_tables(self, mysql_store, mock_cursor):
        """Test every table is created, with cascading foreign keys."""
        mysql_store.create_tables()

        statements = executed_sql(mock_cursor)
        assert len(statements) == len(TABLES)
        assert 'ON DELETE CASCADE' in TABLES['images']
        assert 'ON DELETE CASCADE' in TABLES['job_status']

    def test_increment_is_atomic_update(self, mysql_store, mock_cursor, mock_connection):
        """Test credits are a single UPDATE adding to the stored value."""
        assert mysql_store.increment_storage_used('user-1', 4096)

        sql, params = mock_cursor.execute.call_args.args
        assert 'storage_used = storage_used + %s' in sql
        assert params[0] == 4096
        assert params[-1] == 'user-1'
        mock_connection.commit.assert_called_once()

    def test_decrement_floors_at_zero(self, mysql_store, mock_cursor):
        """Test debits never drive usage below zero."""
        mysql_store.decrement_storage_used('user-1', 100)

        sql, _ = mock_cursor.execute.call_args.args
        assert 'GREATEST(storage_used - %s, 0)' in sql

    def test_unknown_user(self, mysql_store, mock_cursor):
        """Test zero matched rows is reported as not found."""
        mock_cursor.rowcount = 0
        assert mysql_store.increment_storage_used('nobody', 1) is False

    def test_transition_image_is_compare_and_set(self, mysql_store, mock_cursor):
        """Test image transitions are guarded by the current status."""
        mysql_store.transition_image('img-1', {ImageStatus.PROCESSING}, ImageStatus.READY, width=800)

        sql, params = mock_cursor.execute.call_args.args
        assert sql.startswith('UPDATE images SET')
        assert 'WHERE id = %s AND status IN (%s)' in sql
        assert 'ready' in params
        assert params[-2:] == ('img-1', 'processing')

    def test_update_rejects_unknown_columns(self, mysql_store):
        """Test column names are whitelisted."""
        with pytest.raises(ValueError):
            mysql_store.update_image('img-1', **{'status = 1; DROP TABLE images; --': 'x'})

    def test_get_resource_parses_row(self, mysql_store, mock_cursor):
        """Test rows are converted to records."""
        mock_cursor.fetchall.return_value = [{
            'id': 'res-1', 'user_id': 'user-1', 'title': 'T', 'status': 'ready',
            'visibility': 'private', 'created_at': None, 'updated_at': None,
        }]

        resource = mysql_store.get_resource('res-1')

        assert resource.status is ResourceStatus.READY
        assert not resource.is_public

    def test_enqueue_serializes_payload(self, mysql_store, mock_cursor):
        """Test the payload is stored as JSON text."""
        request = ProcessingRequest('img-1', 'res-1', 'user-1', '/src.jpg', '/out.tif')
        mysql_store.enqueue(QueueEntry(id='q-1', job_id='job-1', payload=request))

        sql, params = mock_cursor.execute.call_args.args
        assert sql.startswith('INSERT INTO job_queue')
        assert request.to_json() in params

    def test_claim_next_locks_and_leases(self, mysql_store, mock_cursor, mock_connection):
        """Test claims use SKIP LOCKED and set a lease."""
        request = ProcessingRequest('img-1', 'res-1', 'user-1', '/src.jpg', '/out.tif')
        mock_cursor.fetchone.return_value = {
            'id': 'q-1', 'job_id': 'job-1', 'payload': request.to_json(), 'attempts_made': 0,
            'max_attempts': 3, 'backoff_delay': 5.0, 'available_at': 10.0, 'locked_until': None,
        }

        entry = mysql_store.claim_next(100.0, 60.0)

        statements = executed_sql(mock_cursor)
        assert 'FOR UPDATE SKIP LOCKED' in statements[0]
        assert statements[1].startswith('UPDATE job_queue SET locked_until')
        assert entry.locked_until == 160.0
        assert entry.payload == request
        mock_connection.commit.assert_called_once()

    def test_claim_next_empty(self, mysql_store, mock_cursor):
        """Test an empty queue yields None."""
        mock_cursor.fetchone.return_value = None
        assert mysql_store.claim_next(100.0, 60.0) is None

    def test_claim_error_rolls_back(self, mysql_store, mock_cursor, mock_connection):
        """Test a failed claim is rolled back and re-raised."""
        mock_cursor.execute.side_effect = mysql.connector.Error("lost connection")

        with pytest.raises(mysql.connector.Error):
            mysql_store.claim_next(100.0, 60.0)
        mock_connection.rollback.assert_called_once()

    def test_delete_resource_returns_locked_images(self, mysql_store, mock_cursor):
        """Test deletion reads the images under lock before deleting."""
        mock_cursor.fetchone.return_value = {'id': 'res-1'}
        mock_cursor.fetchall.return_value = [{
            'id': 'img-1', 'resource_id': 'res-1', 'user_id': 'user-1',
            'original_filename': 'a.jpg', 'source_path': '/a.jpg', 'byte_size': 10,
            'order_index': 0, 'status': 'ready', 'output_size': 20,
        }]

        images = mysql_store.delete_resource('res-1')

        statements = executed_sql(mock_cursor)
        assert statements[1].endswith('FOR UPDATE')
        assert statements[2] == 'DELETE FROM resources WHERE id = %s'
        assert images[0].output_size == 20

    def test_pool_connections_are_returned(self, mysql_store, mock_connection):
        """Test connections go back to the pool after each call."""
        mysql_store.get_user('user-1')
        mock_connection.close.assert_called_once()

    def test_complete_image_charges_in_same_transaction(self, mysql_store, mock_cursor, mock_connection):
        """Test the ready transition and the owner's charge commit together."""
        assert mysql_store.complete_image('img-1', {ImageStatus.PROCESSING}, 'user-1', 3000, output_size=3000)

        statements = executed_sql(mock_cursor)
        assert statements[0].startswith('UPDATE images SET')
        assert 'AND status IN (%s)' in statements[0]
        assert 'storage_used = storage_used + %s' in statements[1]
        assert mock_cursor.execute.call_args.args[1][0] == 3000
        mock_connection.commit.assert_called_once()
        mock_connection.close.assert_called_once()

    def test_complete_image_without_match_charges_nothing(self, mysql_store, mock_cursor):
        """Test a completion for a moved or deleted image does not touch the counter."""
        mock_cursor.rowcount = 0

        assert not mysql_store.complete_image('img-1', {ImageStatus.PROCESSING}, 'user-1', 3000)
        assert len(executed_sql(mock_cursor)) == 1

    def test_write_error_rolls_back(self, mysql_store, mock_cursor, mock_connection, caplog):
        """Test a failed statement is rolled back, logged and the connection returned."""
        mock_cursor.execute.side_effect = mysql.connector.Error("deadlock")

        with pytest.raises(mysql.connector.Error):
            mysql_store.increment_storage_used('user-1', 10)

        mock_connection.rollback.assert_called_once()
        mock_connection.commit.assert_not_called()
        mock_connection.close.assert_called_once()
        assert 'deadlock' in caplog.text
