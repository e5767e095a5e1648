"""Unit tests for MinIO storage operations (mocked client)."""
import pytest
import sys
import os
import io
from unittest.mock import MagicMock

import pyarrow.parquet as pq

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from healthdw.config import WAREHOUSE_CONFIG
from healthdw.storage.minio import (
    BACKUP_BUCKET,
    WAREHOUSE_BUCKET,
    backup_duckdb,
    download_duckdb,
    export_parquet,
    init_minio_buckets,
    list_exports,
    upload_duckdb,
)
from sample_data import count_rows


def _uploaded(client):
    """(bucket, object_name, arrow table) for every put_object call."""
    uploads = []
    for call in client.put_object.call_args_list:
        bucket, object_name, data, length = call[0][:4]
        uploads.append((bucket, object_name, pq.read_table(io.BytesIO(data.getvalue()))))
    return uploads


class TestParquetExport:
    """Tests for export_parquet."""

    def test_export_layout(self, loaded_engine):
        """Should write one Parquet object per table under its export date."""
        client = MagicMock()
        exported = export_parquet(
            loaded_engine.conn, loaded_engine.catalog, tables=['DimFacility', 'DimPayer'],
            export_date='2025-01-31', client=client
        )

        assert exported == {'DimFacility': 2, 'DimPayer': 2}
        names = [u[1] for u in _uploaded(client)]
        assert names == [
            'parquet/DimFacility/export_date=2025-01-31/DimFacility.parquet',
            'parquet/DimPayer/export_date=2025-01-31/DimPayer.parquet',
        ]
        assert all(u[0] == WAREHOUSE_BUCKET for u in _uploaded(client))

    def test_dimensions_export_current_rows(self, loaded_engine):
        """Should leave closed TYPE2 versions out of the export."""
        loaded_engine.load_table('DimUnit', [
            {'UnitID': 'U1', 'FacilityID': 'F1', 'UnitName': 'ICU East', 'UnitType': 'ICU',
             'StaffedBeds': 16, 'SourceUpdatedDT': '2025-02-01'}
        ])
        client = MagicMock()
        exported = export_parquet(loaded_engine.conn, loaded_engine.catalog, tables=['DimUnit'], client=client)

        assert count_rows(loaded_engine.conn, 'DimUnit') == 3
        assert exported == {'DimUnit': 2}
        table = _uploaded(client)[0][2]
        assert table.num_rows == 2
        assert 'UnitSK' in table.column_names

    def test_empty_table_not_uploaded(self, engine):
        """Should skip the upload for empty tables."""
        client = MagicMock()
        exported = export_parquet(engine.conn, engine.catalog, tables=['FactEncounter'], client=client)
        assert exported == {'FactEncounter': 0}
        client.put_object.assert_not_called()

    def test_list_exports(self):
        """Should list object names under the Parquet prefix."""
        client = MagicMock()
        client.list_objects.return_value = [MagicMock(object_name='parquet/DimPayer/x.parquet')]
        assert list_exports(client=client) == ['parquet/DimPayer/x.parquet']


class TestWarehouseFile:
    """Tests for download, upload and backup of the DuckDB file."""

    def test_init_buckets(self):
        """Should create only the missing buckets."""
        client = MagicMock()
        client.bucket_exists.side_effect = lambda bucket: bucket == WAREHOUSE_BUCKET
        init_minio_buckets(client=client)
        client.make_bucket.assert_called_once_with(BACKUP_BUCKET)

    def test_force_new_skips_download(self, tmp_path):
        """Should remove stale files and not touch MinIO."""
        path = str(tmp_path / 'dwh.duckdb')
        with open(path + '.wal', 'w') as f:
            f.write('stale')
        client = MagicMock()

        assert download_duckdb(force_new=True, local_path=path, client=client) == path
        assert not os.path.exists(path + '.wal')
        client.fget_object.assert_not_called()

    def test_download_existing(self, tmp_path):
        """Should fetch the warehouse object when it exists."""
        path = str(tmp_path / 'dwh.duckdb')
        client = MagicMock()
        download_duckdb(local_path=path, client=client)
        client.fget_object.assert_called_once_with(WAREHOUSE_BUCKET, WAREHOUSE_CONFIG['duckdb_object'], path)

    def test_upload(self, tmp_path):
        """Should upload to the configured object name."""
        client = MagicMock()
        upload_duckdb('/tmp/dwh.duckdb', client=client)
        client.fput_object.assert_called_once_with(
            WAREHOUSE_BUCKET, WAREHOUSE_CONFIG['duckdb_object'], '/tmp/dwh.duckdb'
        )

    def test_backup_keeps_last_n(self, tmp_path):
        """Should delete the oldest backups beyond `keep`."""
        path = tmp_path / 'dwh.duckdb'
        path.write_bytes(b'duckdb')
        client = MagicMock()
        client.list_objects.return_value = [
            MagicMock(object_name='dwh_backups/healthdw_20250103_000000.duckdb'),
            MagicMock(object_name='dwh_backups/healthdw_20250101_000000.duckdb'),
            MagicMock(object_name='dwh_backups/healthdw_20250102_000000.duckdb'),
        ]

        backup = backup_duckdb(str(path), keep=2, client=client)

        assert backup.startswith('dwh_backups/healthdw_')
        client.fput_object.assert_called_once_with(BACKUP_BUCKET, backup, str(path))
        client.list_objects.assert_called_once_with(BACKUP_BUCKET, prefix='dwh_backups/', recursive=True)
        client.remove_object.assert_called_once_with(BACKUP_BUCKET, 'dwh_backups/healthdw_20250101_000000.duckdb')

    def test_backup_missing_file(self, tmp_path):
        """Should do nothing when there is no local warehouse."""
        client = MagicMock()
        assert backup_duckdb(str(tmp_path / 'missing.duckdb'), client=client) is None
        client.fput_object.assert_not_called()
