from sqlalchemy import inspect

from models import db, InventoryTransaction, next_sequence


def test_schema_builds_with_named_indexes(app):
    names = {index['name'] for index in inspect(db.engine).get_indexes('clinics')}
    assert 'ix_clinics_tenant_id' in names
    assert 'ix_inventory_transactions_item_id' in {index.name for index in InventoryTransaction.__table__.indexes}


def test_sequences_count_per_clinic_and_name(clinic, make_clinic):
    other = make_clinic()

    assert [next_sequence(clinic.id, 'inv') for _ in range(3)] == [1, 2, 3]
    assert next_sequence(clinic.id, 'pay') == 1
    assert next_sequence(other.id, 'inv') == 1
