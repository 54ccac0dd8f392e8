from datetime import timedelta

import pytest

import inventory
import procedures
from conftest import principal_for
from errors import ValidationError, InsufficientStockError, NotFoundError
from models import db, InventoryItem, InventoryTransaction, DentalProcedure, utcnow


def procedure_attrs(patient, dentist, lines, **overrides):
    attrs = dict(
        name='Root Canal Treatment',
        category='Endodontic',
        patient_id=patient.id,
        dentist_id=dentist.id,
        inventory_items=lines,
    )
    attrs.update(overrides)
    return attrs


def test_create_procedure_consumes_inventory(admin_principal, doctor, patient, make_item):
    item_a = make_item(name='K-Files', unit_cost=10.0, current_quantity=10)
    item_b = make_item(name='Paper Points', unit_cost=5.0, current_quantity=4)

    procedure = procedures.create_procedure(admin_principal, procedure_attrs(patient, doctor, [
        {'item_id': item_a.id, 'quantity': 2},
        {'item_id': item_b.id, 'quantity': 1},
    ]))

    assert procedure.total_inventory_cost == 25.0
    assert db.session.get(InventoryItem, item_a.id).current_quantity == 8
    assert db.session.get(InventoryItem, item_b.id).current_quantity == 3

    usage = InventoryTransaction.query.filter_by(transaction_type='Usage').order_by(InventoryTransaction.id).all()
    assert [(entry.item_id, entry.quantity) for entry in usage] == [(item_a.id, -2), (item_b.id, -1)]
    assert all(entry.procedure_id == procedure.id for entry in usage)
    assert usage[0].notes == 'Used in procedure: Root Canal Treatment'


def test_lines_keep_the_unit_cost_at_consumption(admin_principal, doctor, patient, make_item):
    item = make_item(name='Gutta Percha', unit_cost=8.0, current_quantity=10)
    procedure = procedures.create_procedure(admin_principal, procedure_attrs(patient, doctor, [
        {'item_id': item.id, 'quantity': 1},
    ]))

    inventory.update_item(admin_principal, item.id, {'unit_cost': 20.0})

    line = db.session.get(DentalProcedure, procedure.id).items[0]
    assert line.unit_cost == 8.0
    assert line.total_cost == 8.0


def test_failed_line_rolls_back_every_reservation(admin_principal, doctor, patient, make_item):
    item_a = make_item(name='Composite', unit_cost=10.0, current_quantity=10)
    item_b = make_item(name='Etchant', unit_cost=5.0, current_quantity=1)

    with pytest.raises(InsufficientStockError):
        procedures.create_procedure(admin_principal, procedure_attrs(patient, doctor, [
            {'item_id': item_a.id, 'quantity': 3},
            {'item_id': item_b.id, 'quantity': 2},
        ]))

    assert db.session.get(InventoryItem, item_a.id).current_quantity == 10
    assert db.session.get(InventoryItem, item_b.id).current_quantity == 1
    assert DentalProcedure.query.count() == 0
    assert InventoryTransaction.query.filter_by(transaction_type='Usage').count() == 0


def test_add_inventory_items_is_all_or_nothing(admin_principal, doctor, patient, make_item):
    item_a = make_item(name='Sutures', unit_cost=7.0, current_quantity=5)
    item_b = make_item(name='Hemostatic Sponge', unit_cost=12.0, current_quantity=0)
    procedure = procedures.create_procedure(admin_principal, procedure_attrs(
        patient, doctor, [{'item_id': item_a.id, 'quantity': 1}], name='Extraction', category='Oral Surgery',
    ))

    with pytest.raises(InsufficientStockError):
        procedures.add_inventory_items(admin_principal, procedure.id, [
            {'item_id': item_a.id, 'quantity': 2},
            {'item_id': item_b.id, 'quantity': 1},
        ])
    assert db.session.get(InventoryItem, item_a.id).current_quantity == 4

    procedure = procedures.add_inventory_items(admin_principal, procedure.id, [{'item_id': item_a.id, 'quantity': 2}])
    assert len(procedure.items) == 2
    assert procedure.total_inventory_cost == 21.0
    assert db.session.get(InventoryItem, item_a.id).current_quantity == 2


def test_dentist_must_be_a_doctor(admin_principal, make_user, clinic, patient):
    receptionist = make_user('Receptionist', clinic)
    with pytest.raises(ValidationError):
        procedures.create_procedure(admin_principal, procedure_attrs(patient, receptionist, []))


def test_items_of_another_clinic_are_not_found(admin_principal, doctor, patient, make_clinic, make_user, make_item):
    foreign = make_item(principal=principal_for(make_user('Admin', make_clinic())), name='Foreign')
    with pytest.raises(NotFoundError):
        procedures.create_procedure(admin_principal, procedure_attrs(patient, doctor, [
            {'item_id': foreign.id, 'quantity': 1},
        ]))
    assert db.session.get(InventoryItem, foreign.id).current_quantity == 20


def test_delete_does_not_restock(admin_principal, doctor, patient, make_item):
    item = make_item(name='Fluoride Varnish', current_quantity=5)
    procedure = procedures.create_procedure(admin_principal, procedure_attrs(
        patient, doctor, [{'item_id': item.id, 'quantity': 2}], name='Fluoride', category='Preventive',
    ))

    procedures.delete_procedure(admin_principal, procedure.id)

    assert db.session.get(InventoryItem, item.id).current_quantity == 3
    assert InventoryTransaction.query.filter_by(item_id=item.id, transaction_type='Usage').count() == 1


def test_usage_report_groups_by_category_and_item(admin_principal, doctor, patient, make_item):
    files = make_item(name='K-Files', unit_cost=10.0, current_quantity=50)
    varnish = make_item(name='Fluoride Varnish', unit_cost=4.0, current_quantity=50)
    procedures.create_procedure(admin_principal, procedure_attrs(patient, doctor, [
        {'item_id': files.id, 'quantity': 3},
    ]))
    procedures.create_procedure(admin_principal, procedure_attrs(
        patient, doctor, [{'item_id': varnish.id, 'quantity': 2}], name='Varnish', category='Preventive',
    ))

    report = procedures.usage_report(admin_principal)

    assert report['procedure_count'] == 2
    assert report['total_cost'] == 38.0
    assert [row['category'] for row in report['usage_by_category']] == ['Endodontic', 'Preventive']
    assert report['top_items'][0]['name'] == 'K-Files'
    assert report['top_items'][0]['total_quantity'] == 3

    endo_only = procedures.usage_report(admin_principal, category='Endodontic')
    assert endo_only['procedure_count'] == 1
    assert endo_only['total_cost'] == 30.0


def test_usage_trend_buckets(admin_principal, doctor, patient, make_item):
    item = make_item(name='K-Files', unit_cost=10.0, current_quantity=50)
    now = utcnow()
    procedures.create_procedure(admin_principal, procedure_attrs(
        patient, doctor, [{'item_id': item.id, 'quantity': 1}], date=now - timedelta(days=2),
    ))
    procedures.create_procedure(admin_principal, procedure_attrs(
        patient, doctor, [{'item_id': item.id, 'quantity': 1}], date=now - timedelta(days=20),
    ))

    week = procedures.usage_trend(admin_principal, 'week', now=now)
    month = procedures.usage_trend(admin_principal, 'month', now=now)

    assert week['period'] == 'week'
    assert len(week['usage_over_time']) == 1
    assert len(month['usage_over_time']) == 2
    assert month['usage_by_category'] == [{'name': 'Endodontic', 'total_quantity': 2, 'total_cost': 20.0, 'count': 2}]

    with pytest.raises(ValidationError):
        procedures.usage_trend(admin_principal, 'fortnight')


def test_common_items_from_history(admin_principal, doctor, patient, make_item):
    files = make_item(name='K-Files', current_quantity=50)
    points = make_item(name='Paper Points', current_quantity=50)
    for quantity in (1, 2):
        procedures.create_procedure(admin_principal, procedure_attrs(patient, doctor, [
            {'item_id': files.id, 'quantity': quantity},
        ]))
    procedures.create_procedure(admin_principal, procedure_attrs(patient, doctor, [
        {'item_id': points.id, 'quantity': 1},
    ]))

    suggestions = procedures.common_inventory_items(admin_principal, 'Endodontic')

    assert [s['name'] for s in suggestions] == ['K-Files', 'Paper Points']
    assert suggestions[0]['estimated_quantity'] == 2
    assert suggestions[0]['occurrences'] == 2
    assert suggestions[0]['current_stock'] == 47


def test_common_items_keyword_then_generic_fallback(admin_principal, make_item):
    make_item(name='Gutta Percha Points', category='Endodontic Supplies')
    make_item(name='Cotton Rolls', category='Dental Supplies')

    endo = procedures.common_inventory_items(admin_principal, 'Endodontic')
    assert [s['name'] for s in endo] == ['Gutta Percha Points']

    implant = procedures.common_inventory_items(admin_principal, 'Implant')
    assert [s['name'] for s in implant] == ['Cotton Rolls']

    with pytest.raises(ValidationError):
        procedures.common_inventory_items(admin_principal, 'Cosmetic')
