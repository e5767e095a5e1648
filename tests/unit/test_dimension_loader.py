"""Unit tests for DimensionLoader (NONE / TYPE1 / TYPE2)."""
import pytest
import sys
import os
from datetime import datetime

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from healthdw.errors import SchemaError
from healthdw.storage import read_dead_letters
from sample_data import LOAD_TIME, count_rows, dimension_batches


def facility(facility_id='F1', name='General Hospital', **overrides):
    row = {'FacilityID': facility_id, 'FacilityName': name, 'FacilityType': 'Acute',
           'City': 'Boston', 'State': 'MA', 'SourceUpdatedDT': '2024-01-01'}
    row.update(overrides)
    return row


def unit(updated, staffed_beds=12, name='ICU East', facility_id='F1'):
    return {'UnitID': 'U1', 'FacilityID': facility_id, 'UnitName': name, 'UnitType': 'ICU',
            'StaffedBeds': staffed_beds, 'SourceUpdatedDT': updated}


def unit_versions(conn):
    return conn.execute("""
        SELECT "UnitSK", "StaffedBeds", "UnitName", "EffectiveFrom", "EffectiveTo", "IsCurrent"
        FROM "DimUnit" WHERE "UnitID" = 'U1' ORDER BY "EffectiveFrom"
    """).fetchall()


class TestType1Dimension:
    """Tests for overwrite-in-place dimensions (DimFacility)."""

    def test_insert_assigns_surrogate_keys(self, engine):
        """Should insert new keys with distinct surrogate keys."""
        result = engine.load_table('DimFacility', [facility('F1'), facility('F2', 'North')])

        assert result.succeeded
        assert result.inserted == 2
        assert result.surrogate_keys[('F1',)] != result.surrogate_keys[('F2',)]
        assert count_rows(engine.conn, 'DimFacility') == 2

    def test_reload_is_idempotent(self, engine):
        """Should report identical rows as unchanged."""
        engine.load_table('DimFacility', [facility()])
        result = engine.load_table('DimFacility', [facility()])

        assert result.inserted == 0
        assert result.unchanged == 1
        assert count_rows(engine.conn, 'DimFacility') == 1

    def test_change_overwrites_in_place(self, engine):
        """Should keep the surrogate key and overwrite the attribute."""
        first = engine.load_table('DimFacility', [facility()])
        second = engine.load_table('DimFacility', [facility(name='General Hospital West',
                                                             SourceUpdatedDT='2024-06-01')])

        assert second.updated == 1
        assert second.surrogate_keys[('F1',)] == first.surrogate_keys[('F1',)]
        name = engine.conn.execute('SELECT "FacilityName" FROM "DimFacility"').fetchone()[0]
        assert name == 'General Hospital West'

    def test_watermark_is_max_event_time(self, engine):
        """Should advance the watermark to the batch's latest SourceUpdatedDT."""
        result = engine.load_table('DimFacility', [
            facility('F1', SourceUpdatedDT='2024-03-01'),
            facility('F2', SourceUpdatedDT='2024-05-15 08:30:00'),
        ])
        assert result.watermark == datetime(2024, 5, 15, 8, 30)
        assert engine.watermarks.since('DimFacility') == datetime(2024, 5, 15, 8, 30)

    def test_missing_natural_key(self, engine):
        """Should dead-letter rows without a natural key."""
        result = engine.load_table('DimFacility', [facility(None), facility('F2')])

        assert result.inserted == 1
        assert [d.error_kind for d in result.dead_letters] == ['required_value_missing']

    def test_oversized_value(self, engine):
        """Should reject values longer than the declared VARCHAR length."""
        result = engine.load_table('DimFacility', [facility(State='MAS')])
        assert result.errors_of('range_violation')
        assert count_rows(engine.conn, 'DimFacility') == 0

    def test_conflicting_rows_in_batch(self, engine):
        """Should reject every row when one key has different payloads at one time."""
        result = engine.load_table('DimFacility', [facility('F1', 'A'), facility('F1', 'B'), facility('F2')])

        assert len(result.errors_of('conflicting_natural_key')) == 2
        assert result.inserted == 1
        assert count_rows(engine.conn, 'DimFacility', "WHERE \"FacilityID\" = 'F1'") == 0

    def test_identical_duplicates_collapse(self, engine):
        """Should insert once and count the repeat as unchanged."""
        result = engine.load_table('DimFacility', [facility(), facility()])
        assert result.inserted == 1
        assert result.unchanged == 1
        assert result.dead_lettered == 0

    def test_dead_letters_persisted(self, engine):
        """Should store rejected rows in etl_dead_letter."""
        engine.load_table('DimFacility', [facility(State='MAS')])
        letters = read_dead_letters(engine.conn, 'DimFacility')
        assert len(letters) == 1
        assert letters[0]['error_kind'] == 'range_violation'
        assert letters[0]['row_identifier'] == 'F1'
        assert '"State": "MAS"' in letters[0]['payload']

    def test_not_a_dimension(self, engine):
        """Should refuse to load a fact through the dimension loader."""
        with pytest.raises(SchemaError):
            engine.dimension_loader().load('FactEncounter', [])


class TestReferenceDimension:
    """Tests for immutable dimensions (DimPayer)."""

    def test_change_rejected(self, engine):
        """Should dead-letter any attribute change."""
        engine.load_table('DimPayer', [{'PayerID': 'P1', 'Payer': 'Medicare'}])
        result = engine.load_table('DimPayer', [{'PayerID': 'P1', 'Payer': 'Medicaid'}])

        assert [d.error_kind for d in result.dead_letters] == ['immutable_dimension_violation']
        payer = engine.conn.execute('SELECT "Payer" FROM "DimPayer"').fetchone()[0]
        assert payer == 'Medicare'

    def test_identical_reload(self, engine):
        """Should accept identical rows as unchanged."""
        engine.load_table('DimPayer', [{'PayerID': 'P1', 'Payer': 'Medicare'}])
        result = engine.load_table('DimPayer', [{'PayerID': 'P1', 'Payer': 'Medicare'}])
        assert result.unchanged == 1

    def test_decimal_scale_is_not_a_change(self, engine):
        """Should treat 1.5 and 1.500 as the same DRG weight."""
        engine.load_table('DimDRG', [{'DRGCode': 291, 'DRGName': 'Heart Failure', 'DRGWeight': '1.500'}])
        result = engine.load_table('DimDRG', [{'DRGCode': '291', 'DRGName': 'Heart Failure', 'DRGWeight': 1.5}])
        assert result.unchanged == 1
        assert result.dead_lettered == 0


class TestType2Dimension:
    """Tests for versioned dimensions (DimUnit)."""

    def setup_method(self):
        self.facilities = dimension_batches()['DimFacility']

    def _load_units(self, engine, *rows):
        return engine.load_table('DimUnit', list(rows))

    def test_tracked_change_opens_new_version(self, engine):
        """Should close the current version and insert a new surrogate key."""
        engine.load_table('DimFacility', self.facilities)
        first = self._load_units(engine, unit('2025-01-01', 12))
        second = self._load_units(engine, unit('2025-02-01', 16))

        versions = unit_versions(engine.conn)
        assert len(versions) == 2
        old, new = versions
        assert old[0] == first.surrogate_keys[('U1',)]
        assert new[0] == second.surrogate_keys[('U1',)]
        assert old[0] != new[0]
        assert old[4] == datetime(2025, 2, 1)
        assert old[5] is False
        assert new[3] == datetime(2025, 2, 1)
        assert new[4] is None
        assert new[5] is True

    def test_untracked_change_overwrites(self, engine):
        """Should overwrite UnitName on the current version."""
        engine.load_table('DimFacility', self.facilities)
        self._load_units(engine, unit('2025-01-01'))
        result = self._load_units(engine, unit('2025-03-01', name='ICU East Wing'))

        assert result.updated == 1
        versions = unit_versions(engine.conn)
        assert len(versions) == 1
        assert versions[0][2] == 'ICU East Wing'

    def test_restatement_at_version_start_corrects_in_place(self, engine):
        """Should correct the current version when the change time equals its start."""
        engine.load_table('DimFacility', self.facilities)
        self._load_units(engine, unit('2025-01-01', 12))
        self._load_units(engine, unit('2025-01-01', 14))

        versions = unit_versions(engine.conn)
        assert len(versions) == 1
        assert versions[0][1] == 14

    def test_change_before_current_version(self, engine):
        """Should reject a change that predates the current version."""
        engine.load_table('DimFacility', self.facilities)
        self._load_units(engine, unit('2025-02-01', 12))
        result = self._load_units(engine, unit('2025-01-15', 20))

        assert result.errors_of('range_violation')
        assert len(unit_versions(engine.conn)) == 1

    def test_batch_applied_in_event_order(self, engine):
        """Should build history in event-time order regardless of row order."""
        engine.load_table('DimFacility', self.facilities)
        result = self._load_units(engine, unit('2025-03-01', 18), unit('2025-01-01', 12), unit('2025-02-01', 16))

        assert result.inserted == 1
        assert result.updated == 2
        assert [v[1] for v in unit_versions(engine.conn)] == [12, 16, 18]
        assert engine.watermarks.since('DimUnit') == datetime(2025, 3, 1)

    def test_one_current_row_per_key(self, engine):
        """Should keep exactly one current row for a natural key."""
        engine.load_table('DimFacility', self.facilities)
        self._load_units(engine, unit('2025-01-01', 12), unit('2025-02-01', 16), unit('2025-03-01', 18))
        assert count_rows(engine.conn, 'DimUnit', 'WHERE "IsCurrent"') == 1

    def test_unresolved_parent(self, engine):
        """Should dead-letter a unit whose facility is unknown."""
        engine.load_table('DimFacility', self.facilities)
        result = self._load_units(engine, unit('2025-01-01', facility_id='F404'))

        assert [d.error_kind for d in result.dead_letters] == ['unresolved_reference']
        assert count_rows(engine.conn, 'DimUnit') == 0


class TestRetire:
    """Tests for DimensionLoader.retire."""

    def test_retire_closes_current_version(self, engine):
        """Should end the current version at the retirement time."""
        engine.load_table('DimFacility', dimension_batches()['DimFacility'])
        engine.load_table('DimUnit', [unit('2025-01-01')])
        result = engine.dimension_loader().retire('DimUnit', ['U1'], at=datetime(2025, 6, 1))

        assert result.updated == 1
        versions = unit_versions(engine.conn)
        assert versions[0][4] == datetime(2025, 6, 1)
        assert versions[0][5] is False

    def test_retire_referenced_key_rejected(self, loaded_engine):
        """Should keep a facility that current units, clinics or providers still point at."""
        result = loaded_engine.dimension_loader().retire('DimFacility', ['F1'])

        assert result.updated == 0
        assert [d.error_kind for d in result.dead_letters] == ['unresolved_reference']
        assert 'DimUnit.FacilityID (2)' in result.dead_letters[0].reason
        assert count_rows(loaded_engine.conn, 'DimFacility', 'WHERE "IsCurrent"') == 2

        later = loaded_engine.run({'DimPayer': [{'PayerID': 'P3', 'Payer': 'Medicaid'}]})
        assert later['success'], later['message']
        assert count_rows(loaded_engine.conn, 'DimPayer') == 3

    def test_retire_after_dependants_retired(self, loaded_engine):
        """Should retire a facility once nothing current references it."""
        loader = loaded_engine.dimension_loader()
        loader.retire('DimClinic', ['C1'])
        loader.retire('DimProvider', ['PR2'])
        result = loader.retire('DimFacility', ['F2'])

        assert result.updated == 1
        assert result.dead_letters == []

    def test_retire_unknown_key(self, engine):
        """Should count an unknown key as unchanged."""
        result = engine.dimension_loader().retire('DimPayer', ['P404'])
        assert result.unchanged == 1
        assert result.succeeded

    def test_retire_does_not_move_watermark(self, engine):
        """Should leave the watermark alone."""
        engine.load_table('DimPayer', [{'PayerID': 'P1', 'Payer': 'Medicare', 'SourceUpdatedDT': '2024-01-01'}])
        engine.dimension_loader().retire('DimPayer', ['P1'])
        assert engine.watermarks.since('DimPayer') == datetime(2024, 1, 1)

    def test_type1_retire_uses_clock(self, engine):
        """Should flag a TYPE1 row as not current and stamp LoadedAt."""
        engine.load_table('DimFacility', [facility()])
        engine.dimension_loader().retire('DimFacility', ['F1'])
        row = engine.conn.execute('SELECT "IsCurrent", "LoadedAt" FROM "DimFacility"').fetchone()
        assert row == (False, LOAD_TIME)

    def test_reappearing_key_gets_new_surrogate_key(self, engine):
        """Should insert a fresh version for a retired key seen again later."""
        engine.load_table('DimFacility', dimension_batches()['DimFacility'])
        first = engine.load_table('DimUnit', [unit('2025-01-01')])
        engine.dimension_loader().retire('DimUnit', ['U1'], at=datetime(2025, 6, 1))
        again = engine.load_table('DimUnit', [unit('2025-07-01')])

        assert again.inserted == 1
        assert again.surrogate_keys[('U1',)] != first.surrogate_keys[('U1',)]
        assert count_rows(engine.conn, 'DimUnit', 'WHERE "IsCurrent"') == 1

    def test_reappearing_key_before_retirement(self, engine):
        """Should reject a retired key that comes back before it was retired."""
        engine.load_table('DimFacility', dimension_batches()['DimFacility'])
        engine.load_table('DimUnit', [unit('2025-01-01')])
        engine.dimension_loader().retire('DimUnit', ['U1'], at=datetime(2025, 6, 1))
        result = engine.load_table('DimUnit', [unit('2025-05-01')])

        assert result.errors_of('range_violation')
        assert count_rows(engine.conn, 'DimUnit', 'WHERE "IsCurrent"') == 0
