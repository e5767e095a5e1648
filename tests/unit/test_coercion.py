"""Unit tests for row normalization and typed coercion."""
import pytest
import sys
import os
from datetime import date, datetime
from decimal import Decimal

import numpy as np
import pandas as pd

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from healthdw.errors import RangeViolationError, UnresolvedReferenceError
from healthdw.etl.warehouse.base import (
    LoadResult,
    coerce_value,
    is_missing,
    normalize_rows,
    parse_timestamp,
    row_identifier,
    same_value,
)
from healthdw.schema import Column


class TestNormalizeRows:
    """Tests for normalize_rows."""

    def test_none_is_empty_batch(self):
        """Should treat None as an empty batch."""
        assert normalize_rows(None) == []

    def test_dataframe_nan_becomes_none(self):
        """Should turn NaN into None."""
        df = pd.DataFrame([{'FacilityID': 'F1', 'City': np.nan}, {'FacilityID': 'F2', 'City': 'Salem'}])
        rows = normalize_rows(df)
        assert rows[0] == {'FacilityID': 'F1', 'City': None}
        assert rows[1]['City'] == 'Salem'

    def test_list_of_mappings_copied(self):
        """Should copy mappings so callers' rows are not mutated."""
        source = [{'PayerID': 'P1'}]
        rows = normalize_rows(source)
        rows[0]['PayerID'] = 'P2'
        assert source[0]['PayerID'] == 'P1'


class TestCoerceValue:
    """Tests for coerce_value."""

    def test_missing_values(self):
        """Should treat None, NaN and blank strings as missing."""
        assert is_missing(None)
        assert is_missing(float('nan'))
        assert is_missing('  ')
        assert not is_missing(0)

    def test_missing_uses_default(self):
        """Should fill a missing value with the column default."""
        col = Column('ReadmittedWithin30D', 'BOOLEAN', nullable=False, default=False)
        assert coerce_value(col, None, 'FactEncounter') is False

    def test_integer_from_string_and_float(self):
        """Should accept integral strings and floats."""
        col = Column('StaffedBeds', 'INTEGER')
        assert coerce_value(col, '12', 'DimUnit') == 12
        assert coerce_value(col, 12.0, 'DimUnit') == 12

    def test_fractional_integer_rejected(self):
        """Should reject 12.5 for an INTEGER column."""
        with pytest.raises(RangeViolationError) as exc:
            coerce_value(Column('StaffedBeds', 'INTEGER'), '12.5', 'DimUnit', 'U1')
        assert exc.value.row_identifier == 'U1'
        assert exc.value.kind == 'range_violation'

    def test_decimal(self):
        """Should parse money as Decimal."""
        assert coerce_value(Column('NetRevenue', 'DECIMAL(18,2)'), '10250.00', 'FactEncounter') == Decimal('10250.00')

    def test_integer_range(self):
        """Should reject values outside the 32-bit range for INTEGER but not for BIGINT."""
        with pytest.raises(RangeViolationError) as exc:
            coerce_value(Column('OccupiedBeds', 'INTEGER'), 10 ** 10, 'FactCensusDaily', '2025-01-02|F1|U1')
        assert exc.value.row_identifier == '2025-01-02|F1|U1'
        assert coerce_value(Column('OccupiedBeds', 'INTEGER'), 2 ** 31 - 1, 'FactCensusDaily') == 2 ** 31 - 1
        assert coerce_value(Column('NPI', 'BIGINT'), 10 ** 10, 'DimProvider') == 10 ** 10
        with pytest.raises(RangeViolationError):
            coerce_value(Column('NPI', 'BIGINT'), 2 ** 63, 'DimProvider')

    def test_decimal_rounded_to_scale(self):
        """Should round to the column scale."""
        col = Column('NetPatientRevenue', 'DECIMAL(18,2)')
        assert str(coerce_value(col, '1.239', 'FactRevenueDaily')) == '1.24'
        assert str(coerce_value(col, 5, 'FactRevenueDaily')) == '5.00'

    def test_decimal_overflow(self):
        """Should reject values with more integer digits than the column allows."""
        with pytest.raises(RangeViolationError):
            coerce_value(Column('NetPatientRevenue', 'DECIMAL(18,2)'), '1e20', 'FactRevenueDaily')
        with pytest.raises(RangeViolationError):
            coerce_value(Column('DRGWeight', 'DECIMAL(10,3)'), '1e60', 'DimDRG')
        col = Column('ExpectedLOS_Days', 'DECIMAL(10,2)')
        assert coerce_value(col, '99999999.994', 'DimDRG') == Decimal('99999999.99')
        with pytest.raises(RangeViolationError):
            coerce_value(col, '99999999.995', 'DimDRG')

    def test_precision_scale(self):
        """Should read precision and scale from the declared type."""
        assert Column('DRGWeight', 'DECIMAL(10,3)').precision_scale == (10, 3)
        assert Column('Amount', 'DECIMAL(12)').precision_scale == (12, 0)
        assert Column('Amount', 'DECIMAL').precision_scale == (18, 3)

    def test_boolean_strings(self):
        """Should accept common boolean spellings."""
        col = Column('IsWeekend', 'BOOLEAN')
        assert coerce_value(col, 'yes', 'DimDate') is True
        assert coerce_value(col, 'F', 'DimDate') is False
        assert coerce_value(col, 1, 'DimDate') is True
        with pytest.raises(RangeViolationError):
            coerce_value(col, 'maybe', 'DimDate')

    def test_date(self):
        """Should parse dates and truncate timestamps."""
        col = Column('CensusDate', 'DATE')
        assert coerce_value(col, '2025-01-31', 'FactCensusDaily') == date(2025, 1, 31)
        assert coerce_value(col, datetime(2025, 1, 31, 23, 0), 'FactCensusDaily') == date(2025, 1, 31)

    def test_malformed_timestamp(self):
        """Should report malformed timestamps as range violations."""
        with pytest.raises(RangeViolationError):
            coerce_value(Column('AdmitDT', 'TIMESTAMP'), 'not-a-date', 'FactEncounter', 'E1')

    def test_aware_timestamp_converted_to_utc(self):
        """Should store aware timestamps as naive UTC."""
        assert parse_timestamp('2025-01-01T05:00:00+05:00') == datetime(2025, 1, 1, 0, 0)

    def test_varchar_length(self):
        """Should strip text and enforce VARCHAR(n)."""
        col = Column('State', 'VARCHAR', length=2)
        assert coerce_value(col, ' MA ', 'DimFacility') == 'MA'
        with pytest.raises(RangeViolationError):
            coerce_value(col, 'MASS', 'DimFacility', 'F1')


class TestRowHelpers:
    """Tests for row identifiers, value comparison and LoadResult."""

    def test_row_identifier(self):
        """Should return single keys as-is and join composite keys."""
        assert row_identifier({'EncounterID': 'E1'}, ['EncounterID']) == 'E1'
        row = {'CensusDate': date(2025, 1, 1), 'FacilityID': 'F1', 'UnitID': 'U1'}
        assert row_identifier(row, ['CensusDate', 'FacilityID', 'UnitID']) == '2025-01-01|F1|U1'

    def test_same_value(self):
        """Should compare NULL safely and decimals numerically."""
        assert same_value(None, None)
        assert not same_value(None, 0)
        assert same_value(Decimal('1.500'), Decimal('1.5'))

    def test_load_result_reject(self):
        """Should record dead letters with kind and reason."""
        result = LoadResult(table='FactEncounter')
        error = UnresolvedReferenceError('payer P9 not found', table='FactEncounter', row_identifier='E9')
        result.reject(error, {'EncounterID': 'E9', 'PayerID': 'P9'})

        assert result.dead_lettered == 1
        letter = result.errors_of('unresolved_reference')[0]
        assert letter.row_identifier == 'E9'
        assert letter.row['PayerID'] == 'P9'
        assert result.to_dict()['dead_letters'][0]['reason'] == 'payer P9 not found'
