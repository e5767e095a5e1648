"""
Healthcare reporting warehouse: 12 dimensions, 10 facts.

Table and column names are the reporting layer's contract and follow the
HealthcareDataWarehouse DDL. Primary keys become fact grains, foreign keys
become relationships.
"""

import logging

from .catalog import SchemaCatalog
from .definitions import Column, DimensionDef, FactDef, FactKind, Relationship, ScdType

logger = logging.getLogger(__name__)


def _id(name: str, nullable: bool = False, length: int = 10) -> Column:
    return Column(name, 'VARCHAR', nullable=nullable, length=length)


def _text(name: str, length: int, nullable: bool = False) -> Column:
    return Column(name, 'VARCHAR', nullable=nullable, length=length)


def _money(name: str, nullable: bool = True) -> Column:
    return Column(name, 'DECIMAL(18,2)', nullable=nullable)


def healthcare_dimensions():
    """Dimension definitions in creation order (referenced before referencer)."""
    return [
        DimensionDef(
            name='DimDate',
            natural_key=('DateKey',),
            scd_type=ScdType.NONE,
            columns=(
                Column('DateKey', 'INTEGER', nullable=False),
                Column('Date', 'DATE', nullable=False),
                Column('Year', 'INTEGER', nullable=False),
                Column('Month', 'INTEGER', nullable=False),
                _text('MonthName', 10),
                Column('Quarter', 'INTEGER', nullable=False),
                _text('DayOfWeek', 10),
                Column('IsWeekend', 'BOOLEAN', nullable=False, default=False),
            ),
        ),
        DimensionDef(
            name='DimFacility',
            natural_key=('FacilityID',),
            scd_type=ScdType.TYPE1,
            columns=(
                _id('FacilityID'),
                _text('FacilityName', 100),
                _text('FacilityType', 50),
                _text('City', 50),
                _text('State', 2),
            ),
        ),
        DimensionDef(
            name='DimServiceLine',
            natural_key=('ServiceLineID',),
            scd_type=ScdType.NONE,
            columns=(_id('ServiceLineID'), _text('ServiceLine', 50)),
        ),
        DimensionDef(
            name='DimUnit',
            natural_key=('UnitID',),
            scd_type=ScdType.TYPE2,
            tracked_attributes=('FacilityID', 'UnitType', 'StaffedBeds'),
            columns=(
                _id('UnitID'),
                _id('FacilityID'),
                _text('UnitName', 50),
                _text('UnitType', 50),
                Column('StaffedBeds', 'INTEGER', nullable=False),
            ),
            relationships=(Relationship('FacilityID', 'DimFacility'),),
        ),
        DimensionDef(
            name='DimClinic',
            natural_key=('ClinicID',),
            scd_type=ScdType.TYPE1,
            columns=(
                _id('ClinicID'),
                _id('FacilityID'),
                _text('ClinicName', 100),
                _text('City', 50),
            ),
            relationships=(Relationship('FacilityID', 'DimFacility'),),
        ),
        DimensionDef(
            name='DimProvider',
            natural_key=('ProviderID',),
            scd_type=ScdType.TYPE2,
            tracked_attributes=('Specialty', 'PrimaryFacilityID', 'ServiceLineID'),
            columns=(
                _id('ProviderID'),
                _text('ProviderName', 100),
                _text('Specialty', 50),
                _id('PrimaryFacilityID'),
                _id('ServiceLineID', nullable=True),
                Column('NPI', 'BIGINT', nullable=False),
            ),
            relationships=(
                Relationship('PrimaryFacilityID', 'DimFacility'),
                Relationship('ServiceLineID', 'DimServiceLine', mandatory=False),
            ),
        ),
        DimensionDef(
            name='DimPatient',
            natural_key=('PatientID',),
            scd_type=ScdType.TYPE2,
            columns=(
                _id('PatientID'),
                _text('Sex', 1),
                Column('BirthDate', 'DATE', nullable=False),
                Column('ZIP', 'INTEGER', nullable=False),
            ),
        ),
        DimensionDef(
            name='DimPayer',
            natural_key=('PayerID',),
            scd_type=ScdType.NONE,
            columns=(_id('PayerID'), _text('Payer', 50)),
        ),
        DimensionDef(
            name='DimAppointmentType',
            natural_key=('ApptTypeID',),
            scd_type=ScdType.NONE,
            columns=(_id('ApptTypeID'), _text('AppointmentType', 50)),
        ),
        DimensionDef(
            name='DimInfectionType',
            natural_key=('InfectionTypeID',),
            scd_type=ScdType.NONE,
            columns=(_id('InfectionTypeID'), _text('InfectionType', 50)),
        ),
        DimensionDef(
            name='DimSurveyDomain',
            natural_key=('SurveyDomainID',),
            scd_type=ScdType.NONE,
            columns=(_id('SurveyDomainID'), _text('SurveyDomain', 100)),
        ),
        DimensionDef(
            name='DimDRG',
            natural_key=('DRGCode',),
            scd_type=ScdType.NONE,
            columns=(
                Column('DRGCode', 'INTEGER', nullable=False),
                _text('DRGName', 100),
                Column('DRGWeight', 'DECIMAL(10,3)', nullable=False),
            ),
        ),
    ]


def healthcare_facts():
    """Fact definitions in creation order (FactSurveyResponse links to encounters and appointments)."""
    return [
        FactDef(
            name='FactEncounter',
            kind=FactKind.EVENT,
            grain=('EncounterID',),
            event_time_column='AdmitDT',
            columns=(
                _id('EncounterID', length=20),
                _id('PatientID'),
                _id('FacilityID'),
                _id('ServiceLineID', nullable=True),
                _id('ProviderID'),
                _id('PayerID'),
                _text('EncounterType', 20),
                Column('AdmitDT', 'TIMESTAMP', nullable=False),
                Column('DischargeDT', 'TIMESTAMP'),
                Column('AdmitDate', 'DATE', nullable=False),
                Column('DischargeDate', 'DATE'),
                Column('DRGCode', 'INTEGER'),
                Column('DRGWeight', 'DECIMAL(10,3)'),
                Column('ExpectedLOS_Days', 'DECIMAL(10,2)'),
                Column('IsIndexEligible', 'BOOLEAN'),
                Column('IsPlannedReadmit', 'BOOLEAN'),
                _money('TotalCharges'),
                _money('TotalPayments'),
                _money('TotalAdjustments'),
                _money('NetRevenue'),
                Column('ReadmittedWithin30D', 'BOOLEAN', nullable=False, default=False),
            ),
            measures=(
                'DRGWeight', 'ExpectedLOS_Days', 'TotalCharges',
                'TotalPayments', 'TotalAdjustments', 'NetRevenue',
            ),
            relationships=(
                Relationship('PatientID', 'DimPatient'),
                Relationship('FacilityID', 'DimFacility'),
                Relationship('ServiceLineID', 'DimServiceLine', mandatory=False),
                Relationship('ProviderID', 'DimProvider'),
                Relationship('PayerID', 'DimPayer'),
                Relationship('DRGCode', 'DimDRG', mandatory=False),
            ),
        ),
        FactDef(
            name='FactEDVisit',
            kind=FactKind.EVENT,
            grain=('EDEncounterID',),
            event_time_column='ArrivalDT',
            columns=(
                _id('EDEncounterID', length=20),
                _id('PatientID'),
                _id('FacilityID'),
                _id('UnitID'),
                _id('PayerID'),
                Column('ArrivalDT', 'TIMESTAMP', nullable=False),
                Column('DepartureDT', 'TIMESTAMP'),
                Column('ArrivalDate', 'DATE', nullable=False),
                _text('Disposition', 20),
                Column('ESI_Acuity', 'INTEGER', nullable=False),
            ),
            measures=('ESI_Acuity',),
            relationships=(
                Relationship('PatientID', 'DimPatient'),
                Relationship('FacilityID', 'DimFacility'),
                Relationship('UnitID', 'DimUnit'),
                Relationship('PayerID', 'DimPayer'),
            ),
        ),
        FactDef(
            name='FactAppointment',
            kind=FactKind.EVENT,
            grain=('ApptID',),
            event_time_column='ApptDT',
            columns=(
                _id('ApptID', length=20),
                _id('PatientID'),
                _id('ClinicID'),
                _id('FacilityID'),
                _id('ProviderID'),
                _id('PayerID'),
                _id('ApptTypeID'),
                Column('ScheduledDT', 'TIMESTAMP', nullable=False),
                Column('ApptDT', 'TIMESTAMP', nullable=False),
                Column('ApptDate', 'DATE', nullable=False),
                _text('Status', 20),
                Column('CancelDT', 'TIMESTAMP'),
                Column('PlannedDurationMin', 'INTEGER', nullable=False),
                Column('CheckInDelayMin', 'INTEGER'),
            ),
            measures=('PlannedDurationMin', 'CheckInDelayMin'),
            relationships=(
                Relationship('PatientID', 'DimPatient'),
                Relationship('ClinicID', 'DimClinic'),
                Relationship('FacilityID', 'DimFacility'),
                Relationship('ProviderID', 'DimProvider'),
                Relationship('PayerID', 'DimPayer'),
                Relationship('ApptTypeID', 'DimAppointmentType'),
            ),
        ),
        FactDef(
            name='FactCensusDaily',
            kind=FactKind.SNAPSHOT,
            grain=('CensusDate', 'FacilityID', 'UnitID'),
            event_time_column='CensusDate',
            columns=(
                Column('CensusDate', 'DATE', nullable=False),
                _id('FacilityID'),
                _id('UnitID'),
                Column('OccupiedBeds', 'INTEGER', nullable=False),
                Column('StaffedBeds', 'INTEGER', nullable=False),
                Column('PatientDays', 'INTEGER'),
            ),
            measures=('OccupiedBeds', 'StaffedBeds', 'PatientDays'),
            relationships=(
                Relationship('FacilityID', 'DimFacility'),
                Relationship('UnitID', 'DimUnit'),
            ),
        ),
        FactDef(
            name='FactDeviceDays',
            kind=FactKind.SNAPSHOT,
            grain=('DeviceDate', 'FacilityID', 'UnitID', 'DeviceType'),
            event_time_column='DeviceDate',
            columns=(
                Column('DeviceDate', 'DATE', nullable=False),
                _id('FacilityID'),
                _id('UnitID'),
                _text('DeviceType', 50),
                Column('DeviceDays', 'INTEGER', nullable=False),
            ),
            measures=('DeviceDays',),
            relationships=(
                Relationship('FacilityID', 'DimFacility'),
                Relationship('UnitID', 'DimUnit'),
            ),
        ),
        FactDef(
            name='FactInfectionEvent',
            kind=FactKind.EVENT,
            grain=('InfectionEventID',),
            event_time_column='EventDT',
            columns=(
                _id('InfectionEventID', length=20),
                Column('EventDT', 'TIMESTAMP', nullable=False),
                Column('EventDate', 'DATE', nullable=False),
                _id('FacilityID'),
                _id('UnitID'),
                _id('InfectionTypeID'),
                _id('PatientID'),
            ),
            relationships=(
                Relationship('FacilityID', 'DimFacility'),
                Relationship('UnitID', 'DimUnit'),
                Relationship('InfectionTypeID', 'DimInfectionType'),
                Relationship('PatientID', 'DimPatient'),
            ),
        ),
        FactDef(
            name='FactSurveyResponse',
            kind=FactKind.EVENT,
            grain=('ResponseID',),
            event_time_column='ResponseDT',
            columns=(
                _id('ResponseID', length=20),
                Column('ResponseDT', 'TIMESTAMP', nullable=False),
                Column('ResponseDate', 'DATE', nullable=False),
                _text('Instrument', 50),
                _id('SurveyDomainID'),
                Column('Score_1to5', 'INTEGER', nullable=False),
                Column('TopBoxFlag', 'BOOLEAN', nullable=False, default=False),
                _id('FacilityID'),
                _id('LinkedEncounterID', nullable=True, length=20),
                _id('LinkedApptID', nullable=True, length=20),
            ),
            measures=('Score_1to5',),
            relationships=(
                Relationship('SurveyDomainID', 'DimSurveyDomain'),
                Relationship('FacilityID', 'DimFacility'),
                Relationship('LinkedEncounterID', 'FactEncounter', mandatory=False),
                Relationship('LinkedApptID', 'FactAppointment', mandatory=False),
            ),
        ),
        FactDef(
            name='FactRevenueDaily',
            kind=FactKind.SNAPSHOT,
            grain=('RevenueDate', 'FacilityID'),
            event_time_column='RevenueDate',
            columns=(
                Column('RevenueDate', 'DATE', nullable=False),
                _id('FacilityID'),
                _money('NetPatientRevenue', nullable=False),
            ),
            measures=('NetPatientRevenue',),
            relationships=(Relationship('FacilityID', 'DimFacility'),),
        ),
        FactDef(
            name='FactARSnapshot',
            kind=FactKind.SNAPSHOT,
            grain=('SnapshotDate', 'FacilityID', 'PayerID'),
            event_time_column='SnapshotDate',
            columns=(
                Column('SnapshotDate', 'DATE', nullable=False),
                _id('FacilityID'),
                _id('PayerID'),
                _money('ARBalance', nullable=False),
                _money('AR_0_30', nullable=False),
                _money('AR_31_60', nullable=False),
                _money('AR_61_90', nullable=False),
                _money('AR_91_120', nullable=False),
                _money('AR_120_plus', nullable=False),
            ),
            measures=('ARBalance', 'AR_0_30', 'AR_31_60', 'AR_61_90', 'AR_91_120', 'AR_120_plus'),
            relationships=(
                Relationship('FacilityID', 'DimFacility'),
                Relationship('PayerID', 'DimPayer'),
            ),
        ),
        FactDef(
            name='FactTNA_Snapshot',
            kind=FactKind.SNAPSHOT,
            grain=('SnapshotDate', 'ClinicID', 'ApptTypeID'),
            event_time_column='SnapshotDate',
            columns=(
                Column('SnapshotDate', 'DATE', nullable=False),
                _id('ClinicID'),
                _id('ApptTypeID'),
                Column('ThirdNextAvailableDate', 'DATE', nullable=False),
                Column('TNA_Days', 'INTEGER', nullable=False),
            ),
            measures=('TNA_Days',),
            relationships=(
                Relationship('ClinicID', 'DimClinic'),
                Relationship('ApptTypeID', 'DimAppointmentType'),
            ),
        ),
    ]


def build_healthcare_catalog(freeze: bool = True) -> SchemaCatalog:
    """Build the HealthcareDataWarehouse catalog."""
    catalog = SchemaCatalog('HealthcareDataWarehouse')
    for dim in healthcare_dimensions():
        catalog.register_dimension(dim)
    for fact in healthcare_facts():
        catalog.register_fact(fact)
    if freeze:
        catalog.freeze()
    return catalog
