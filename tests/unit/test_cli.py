"""Unit tests for the command-line interface."""
import pytest
import sys
import os
import json

import pandas as pd

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from healthdw.__main__ import build_parser, main
from healthdw.storage import get_duckdb_connection
from sample_data import census_row, count_rows, dimension_batches


def _write_inputs(directory):
    dims = dimension_batches()
    pd.DataFrame(dims['DimFacility']).to_csv(directory / 'DimFacility.csv', index=False)
    pd.DataFrame(dims['DimUnit']).to_csv(directory / 'DimUnit.csv', index=False)
    pd.DataFrame([census_row('2025-01-01'), census_row('2025-01-02')]).to_csv(
        directory / 'FactCensusDaily.csv', index=False
    )


class TestCLI:
    """Tests for python -m healthdw."""

    def setup_method(self):
        self.parser = build_parser()

    def test_command_required(self):
        """Should require a subcommand."""
        with pytest.raises(SystemExit):
            self.parser.parse_args([])

    def test_ddl(self, capsys):
        """Should print CREATE statements."""
        assert main(['ddl']) == 0
        out = capsys.readouterr().out
        assert 'CREATE TABLE IF NOT EXISTS "DimFacility"' in out
        assert 'CREATE SEQUENCE IF NOT EXISTS seq_dimunit_sk START 1;' in out

    def test_init_creates_warehouse(self, tmp_path, capsys):
        """Should create the warehouse file."""
        db = str(tmp_path / 'dwh' / 'healthcare.duckdb')
        assert main(['init', '--db', db]) == 0
        assert os.path.exists(db)
        assert '22 tables' in capsys.readouterr().out

    def test_validate_catalog_only(self, capsys):
        """Should pass with warnings only."""
        assert main(['validate', '--catalog-only']) == 0
        out = capsys.readouterr().out
        assert 'WARNING  DimDate.unreferenced_dimension' in out

    def test_validate_json(self, tmp_path, capsys):
        """Should print the report as JSON."""
        db = str(tmp_path / 'healthcare.duckdb')
        main(['init', '--db', db])
        capsys.readouterr()

        assert main(['validate', '--db', db, '--json']) == 0
        report = json.loads(capsys.readouterr().out)
        assert report['errors'] == 0
        assert report['rows_checked'] is True

    def test_load_and_watermarks(self, tmp_path, capsys):
        """Should load table files and show the resulting watermarks."""
        _write_inputs(tmp_path)
        db = str(tmp_path / 'healthcare.duckdb')

        assert main(['load', '--input-dir', str(tmp_path), '--db', db, '--serial']) == 0
        out = capsys.readouterr().out
        assert 'FactCensusDaily' in out
        assert 'inserted=2' in out

        assert main(['watermarks', '--db', db]) == 0
        out = capsys.readouterr().out
        census = [line for line in out.splitlines() if line.startswith('FactCensusDaily')][0]
        assert '2025-01-02 00:00:00' in census

    def test_load_keeps_ids_as_text(self, tmp_path):
        """Should not turn numeric codes into floats or drop leading zeros."""
        dims = dimension_batches()
        pd.DataFrame(dims['DimFacility']).to_csv(tmp_path / 'DimFacility.csv', index=False)
        pd.DataFrame([
            {'ServiceLineID': '10', 'ServiceLine': 'Cardiology'},
            {'ServiceLineID': '001', 'ServiceLine': 'Oncology'},
        ]).to_csv(tmp_path / 'DimServiceLine.csv', index=False)
        providers = dims['DimProvider'] + [dict(dims['DimProvider'][0], ProviderID='PR3', NPI=1112223334)]
        providers[0]['ServiceLineID'] = '10'
        providers[2]['ServiceLineID'] = '001'
        pd.DataFrame(providers).to_csv(tmp_path / 'DimProvider.csv', index=False)
        db = str(tmp_path / 'healthcare.duckdb')

        assert main(['load', '--input-dir', str(tmp_path), '--db', db, '--serial']) == 0

        with get_duckdb_connection(db) as conn:
            rows = conn.execute(
                'SELECT "ProviderID", "ServiceLineID" FROM "DimProvider" ORDER BY "ProviderID"'
            ).fetchall()
            dead_letters = count_rows(conn, 'etl_dead_letter')
        assert rows == [('PR1', '10'), ('PR2', None), ('PR3', '001')]
        assert dead_letters == 0

    def test_load_without_inputs(self, tmp_path):
        """Should fail when no table files are present."""
        assert main(['load', '--input-dir', str(tmp_path), '--db', str(tmp_path / 'x.duckdb')]) == 1

    def test_reset_watermark(self, tmp_path, capsys):
        """Should move a watermark back."""
        _write_inputs(tmp_path)
        db = str(tmp_path / 'healthcare.duckdb')
        main(['load', '--input-dir', str(tmp_path), '--db', db])
        capsys.readouterr()

        assert main(['reset-watermark', 'FactCensusDaily', '--to', '2024-12-31', '--db', db]) == 0
        main(['watermarks', '--db', db])
        out = capsys.readouterr().out
        census = [line for line in out.splitlines() if line.startswith('FactCensusDaily')][0]
        assert '2024-12-31 00:00:00' in census

    def test_unknown_table(self, tmp_path):
        """Should exit with 2 on warehouse errors."""
        assert main(['reset-watermark', 'FactMissing', '--db', str(tmp_path / 'x.duckdb')]) == 2
