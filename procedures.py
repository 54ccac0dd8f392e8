"""Dental procedures and the inventory they consume."""

import math
from collections import defaultdict
from datetime import timedelta

from sqlalchemy import or_, func

import inventory
from errors import ValidationError
from logs import get_logger
from models import (
    db, DentalProcedure, ProcedureItem, InventoryItem, Patient, User, Appointment,
    get_for_clinic, to_utc_naive, range_start, range_end, utcnow, procedure_categories,
)

logger = get_logger(__name__)

PROCEDURE_FIELDS = ('name', 'category', 'description', 'duration', 'notes', 'status')

CATEGORY_KEYWORDS = {
    'Diagnostic': ('mirror', 'explorer', 'probe', 'x-ray'),
    'Preventive': ('fluoride', 'sealant', 'prophy', 'paste'),
    'Restorative': ('composite', 'amalgam', 'cement', 'matrix'),
    'Endodontic': ('file', 'gutta percha', 'sealer', 'irrigant'),
    'Periodontic': ('scaler', 'curette', 'periodontal', 'dressing'),
    'Prosthodontic': ('impression', 'tray', 'wax', 'articulator'),
    'Oral Surgery': ('forceps', 'elevator', 'suture', 'scalpel'),
    'Orthodontic': ('bracket', 'wire', 'band', 'elastic'),
    'Implant': ('implant', 'abutment', 'analog', 'driver'),
}
GENERIC_KEYWORDS = ('gloves', 'mask', 'bib', 'cotton')
GENERIC_SUPPLY_CATEGORY = 'Dental Supplies'

# period -> (window, bucket key)
TREND_PERIODS = {
    'week': (timedelta(days=7), lambda d: d.strftime('%Y-%m-%d')),
    'month': (timedelta(days=30), lambda d: d.strftime('%Y-%m-%d')),
    'quarter': (timedelta(weeks=13), lambda d: d.strftime('%G-W%V')),
    'year': (timedelta(days=365), lambda d: d.strftime('%Y-%m')),
}


def _dentist_for_clinic(principal, dentist_id):
    dentist = get_for_clinic(User, principal.clinic_id, dentist_id, 'Dentist')
    if dentist.role not in ('Doctor', 'Admin'):
        raise ValidationError('Dentist must be a doctor of this clinic')
    return dentist


def _attach_lines(procedure, snapshots):
    for snapshot in snapshots:
        procedure.items.append(ProcedureItem(
            item=snapshot['item'],
            quantity=snapshot['quantity'],
            unit_cost=snapshot['unit_cost'],
            total_cost=snapshot['total_cost'],
        ))
    procedure.recalculate_inventory_cost()


def get_procedure(principal, procedure_id):
    return get_for_clinic(DentalProcedure, principal.clinic_id, procedure_id, 'Dental procedure')


def create_procedure(principal, attrs):
    """Create a procedure and consume its inventory as one unit of work.

    Every line is reserved with a conditional decrement. If any line fails the
    whole transaction rolls back, so no stock moves and no procedure is saved.
    """
    for field in ('name', 'category', 'patient_id', 'dentist_id'):
        if not attrs.get(field):
            raise ValidationError(f"{field} is required")

    try:
        patient = get_for_clinic(Patient, principal.clinic_id, attrs['patient_id'], 'Patient')
        dentist = _dentist_for_clinic(principal, attrs['dentist_id'])
        if attrs.get('appointment_id'):
            get_for_clinic(Appointment, principal.clinic_id, attrs['appointment_id'], 'Appointment')

        procedure = DentalProcedure(
            clinic_id=principal.clinic_id,
            patient_id=patient.id,
            dentist_id=dentist.id,
            appointment_id=attrs.get('appointment_id'),
            date=to_utc_naive(attrs.get('date')) or utcnow(),
            status=attrs.get('status') or 'Scheduled',
            created_by_id=principal.actor_id,
            **{key: attrs[key] for key in PROCEDURE_FIELDS if key != 'status' and attrs.get(key) is not None},
        )
        db.session.add(procedure)
        db.session.flush()

        snapshots = inventory.consume(
            principal, attrs.get('inventory_items') or [],
            reference=procedure.name, procedure_id=procedure.id,
        )
        _attach_lines(procedure, snapshots)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('procedure_created', procedure_id=procedure.id, lines=len(snapshots),
                total_inventory_cost=procedure.total_inventory_cost)
    return procedure


def add_inventory_items(principal, procedure_id, lines):
    if not lines:
        raise ValidationError('Please provide inventory items')
    try:
        procedure = get_procedure(principal, procedure_id)
        snapshots = inventory.consume(principal, lines, reference=procedure.name, procedure_id=procedure.id)
        _attach_lines(procedure, snapshots)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return procedure


def update_procedure(principal, procedure_id, attrs):
    procedure = get_procedure(principal, procedure_id)
    for key in PROCEDURE_FIELDS:
        if key in attrs and attrs[key] is not None:
            setattr(procedure, key, attrs[key])
    if attrs.get('date'):
        procedure.date = to_utc_naive(attrs['date'])
    if attrs.get('dentist_id'):
        procedure.dentist_id = _dentist_for_clinic(principal, attrs['dentist_id']).id
    if attrs.get('patient_id'):
        procedure.patient_id = get_for_clinic(Patient, principal.clinic_id, attrs['patient_id'], 'Patient').id
    procedure.updated_by_id = principal.actor_id
    db.session.commit()
    return procedure


def delete_procedure(principal, procedure_id):
    """Hard delete. Consumed stock is not returned to inventory."""
    procedure = get_procedure(principal, procedure_id)
    db.session.delete(procedure)
    db.session.commit()
    logger.info('procedure_deleted', procedure_id=procedure_id)


def list_procedures(principal, search=None, category=None, status=None, start_date=None, end_date=None,
                    dentist_id=None, patient_id=None):
    query = DentalProcedure.query.filter(DentalProcedure.clinic_id == principal.clinic_id)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(DentalProcedure.name.ilike(pattern), DentalProcedure.description.ilike(pattern)))
    if category:
        query = query.filter(DentalProcedure.category == category)
    if status:
        query = query.filter(DentalProcedure.status == status)
    if start_date:
        query = query.filter(DentalProcedure.date >= range_start(start_date))
    if end_date:
        query = query.filter(DentalProcedure.date <= range_end(end_date))
    if dentist_id:
        query = query.filter(DentalProcedure.dentist_id == dentist_id)
    if patient_id:
        query = query.filter(DentalProcedure.patient_id == patient_id)
    return query.order_by(DentalProcedure.date.desc(), DentalProcedure.id.desc())


def _usage_rows(principal, start=None, end=None, category=None):
    query = (
        db.session.query(ProcedureItem, DentalProcedure.category, DentalProcedure.date)
        .join(DentalProcedure, ProcedureItem.procedure_id == DentalProcedure.id)
        .filter(DentalProcedure.clinic_id == principal.clinic_id)
    )
    if start:
        query = query.filter(DentalProcedure.date >= start)
    if end:
        query = query.filter(DentalProcedure.date <= end)
    if category:
        query = query.filter(DentalProcedure.category == category)
    return query.all()


def _rollup(rows, key, label):
    buckets = defaultdict(lambda: {'total_quantity': 0, 'total_cost': 0.0, 'count': 0})
    for row in rows:
        bucket = buckets[key(row)]
        bucket['total_quantity'] += row[0].quantity
        bucket['total_cost'] += row[0].total_cost
        bucket['count'] += 1
    result = []
    for name, bucket in buckets.items():
        bucket['total_cost'] = round(bucket['total_cost'], 2)
        result.append({label: name, **bucket})
    return result


def _top_items(rows, limit):
    by_item = _rollup(rows, lambda row: row[0].item_id, 'item_id')
    names = {
        item.id: item
        for item in InventoryItem.query.filter(InventoryItem.id.in_([entry['item_id'] for entry in by_item])).all()
    }
    for entry in by_item:
        item = names.get(entry['item_id'])
        entry['name'] = item.name if item else None
        entry['category'] = item.category if item else None
    by_item.sort(key=lambda entry: (-entry['total_cost'], entry['item_id']))
    return by_item[:limit]


def usage_report(principal, start_date=None, end_date=None, category=None):
    start = range_start(start_date) if start_date else None
    end = range_end(end_date) if end_date else None
    rows = _usage_rows(principal, start, end, category)

    by_category = _rollup(rows, lambda row: row[1], 'category')
    by_category.sort(key=lambda entry: (-entry['total_cost'], entry['category']))

    totals = db.session.query(
        func.coalesce(func.sum(DentalProcedure.total_inventory_cost), 0),
        func.count(DentalProcedure.id),
    ).filter(DentalProcedure.clinic_id == principal.clinic_id)
    if start:
        totals = totals.filter(DentalProcedure.date >= start)
    if end:
        totals = totals.filter(DentalProcedure.date <= end)
    if category:
        totals = totals.filter(DentalProcedure.category == category)
    total_cost, procedure_count = totals.one()

    return {
        'usage_by_category': by_category,
        'top_items': _top_items(rows, 10),
        'total_cost': round(float(total_cost), 2),
        'procedure_count': procedure_count,
    }


def usage_trend(principal, period='month', category=None, limit=10, now=None):
    if period not in TREND_PERIODS:
        raise ValidationError(f"Period must be one of {tuple(TREND_PERIODS)}")
    window, bucket_key = TREND_PERIODS[period]
    now = now or utcnow()
    rows = _usage_rows(principal, start=now - window, end=now, category=category)

    over_time = _rollup(rows, lambda row: (bucket_key(row[2]), row[1]), 'bucket')
    for entry in over_time:
        entry['date'], entry['category'] = entry.pop('bucket')
    over_time.sort(key=lambda entry: (entry['date'], entry['category']))

    by_category = _rollup(rows, lambda row: row[1], 'name')
    by_category.sort(key=lambda entry: (-entry['total_cost'], entry['name']))

    return {
        'usage_over_time': over_time,
        'top_items': _top_items(rows, int(limit)),
        'usage_by_category': by_category,
        'period': period,
    }


def _suggestion(item, estimated_quantity=1, **extra):
    return {
        'item_id': item.id,
        'name': item.name,
        'category': item.category,
        'unit': item.unit_of_measure,
        'estimated_quantity': estimated_quantity,
        'current_stock': item.current_quantity,
        **extra,
    }


def common_inventory_items(principal, category):
    """Suggest the items a procedure of ``category`` usually consumes."""
    if not category:
        raise ValidationError('Procedure category is required')
    if category not in procedure_categories:
        raise ValidationError(f"Category must be one of {procedure_categories}")

    lines = (
        ProcedureItem.query
        .join(DentalProcedure, ProcedureItem.procedure_id == DentalProcedure.id)
        .filter(DentalProcedure.clinic_id == principal.clinic_id, DentalProcedure.category == category)
        .all()
    )
    if lines:
        usage = {}
        for line in lines:
            entry = usage.setdefault(line.item_id, {'item': line.item, 'total': 0, 'occurrences': 0})
            entry['total'] += line.quantity
            entry['occurrences'] += 1
        ranked = sorted(usage.values(), key=lambda entry: (-entry['occurrences'], entry['item'].name))
        return [
            _suggestion(
                entry['item'],
                estimated_quantity=math.ceil(entry['total'] / entry['occurrences']),
                total_quantity=entry['total'],
                occurrences=entry['occurrences'],
            )
            for entry in ranked
        ]

    keywords = CATEGORY_KEYWORDS.get(category, GENERIC_KEYWORDS)
    clinic_items = InventoryItem.query.filter(InventoryItem.clinic_id == principal.clinic_id)
    matches = (
        clinic_items
        .filter(or_(*[InventoryItem.name.ilike(f"%{word}%") for word in keywords]))
        .order_by(InventoryItem.name.asc())
        .all()
    )
    if not matches:
        matches = (
            clinic_items
            .filter(InventoryItem.category == GENERIC_SUPPLY_CATEGORY)
            .order_by(InventoryItem.name.asc())
            .limit(5)
            .all()
        )
    return [_suggestion(item) for item in matches]
