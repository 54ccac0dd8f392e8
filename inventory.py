"""Inventory ledger: stock levels per item plus the append-only transaction log.

``InventoryItem.current_quantity`` is a projection of the ledger. Every change
to it goes through a single UPDATE statement so concurrent requests cannot
read-modify-write over each other.
"""

from datetime import timedelta

from flask import current_app, has_app_context
from sqlalchemy import update, select, func, case, or_

from errors import ValidationError, NotFoundError, ForbiddenError, InsufficientStockError
from logs import get_logger
from models import (
    db, InventoryItem, InventoryTransaction, next_sequence, range_start, range_end, utcnow,
    transaction_types, consumption_types,
)

logger = get_logger(__name__)

ITEM_FIELDS = (
    'name', 'category', 'description', 'unit_of_measure', 'reorder_level', 'ideal_quantity',
    'unit_cost', 'expiry_date', 'location', 'supplier_name', 'supplier_contact', 'notes',
)


def generate_item_code(clinic_id, category, when=None):
    when = when or utcnow()
    prefix = category.strip()[:3].upper()
    sequence = next_sequence(clinic_id, f"item:{prefix}")
    return f"{prefix}-{when.strftime('%Y%m')}-{sequence:04d}"


def get_item(principal, item_id):
    item = db.session.get(InventoryItem, item_id) if item_id is not None else None
    if not item:
        raise NotFoundError('Inventory item not found')
    if item.clinic_id != principal.clinic_id:
        raise ForbiddenError('Not authorized to access this inventory item')
    return item


def _ledger_entry(principal, item, transaction_type, quantity, unit_cost, notes=None,
                  reference_number=None, procedure_id=None):
    entry = InventoryTransaction(
        clinic_id=principal.clinic_id,
        item_id=item.id,
        transaction_type=transaction_type,
        quantity=quantity,
        unit_cost=unit_cost,
        total_cost=round(abs(quantity) * unit_cost, 2),
        reference_number=reference_number,
        notes=notes,
        performed_by_id=principal.actor_id,
        procedure_id=procedure_id,
        date=utcnow(),
    )
    db.session.add(entry)
    return entry


def create_item(principal, attrs):
    quantity = int(attrs.get('current_quantity') or 0)
    if quantity < 0:
        raise ValidationError('Current quantity cannot be negative')
    if not attrs.get('category'):
        raise ValidationError('Category is required')

    item = InventoryItem(
        clinic_id=principal.clinic_id,
        item_code=generate_item_code(principal.clinic_id, attrs['category']),
        current_quantity=quantity,
        created_by_id=principal.actor_id,
        **{key: attrs[key] for key in ITEM_FIELDS if attrs.get(key) is not None},
    )
    db.session.add(item)
    db.session.flush()

    if quantity > 0:
        _ledger_entry(principal, item, 'Purchase', quantity, item.unit_cost, notes='Initial inventory')

    db.session.commit()
    logger.info('inventory_item_created', item_id=item.id, item_code=item.item_code, quantity=quantity)
    return item


def update_item(principal, item_id, attrs):
    """Update item fields; a quantity change is booked as one Adjustment entry."""
    item = get_item(principal, item_id)

    for key in ITEM_FIELDS:
        if key in attrs:
            setattr(item, key, attrs[key])
    if 'is_active' in attrs:
        item.is_active = bool(attrs['is_active'])

    new_quantity = attrs.get('current_quantity')
    if new_quantity is not None and int(new_quantity) != item.current_quantity:
        new_quantity = int(new_quantity)
        if new_quantity < 0:
            raise ValidationError('Current quantity cannot be negative')
        delta = new_quantity - item.current_quantity
        _ledger_entry(principal, item, 'Adjustment', delta, item.unit_cost,
                      notes=attrs.get('notes') or 'Quantity adjustment')
        item.current_quantity = new_quantity

    db.session.commit()
    return item


def deactivate_item(principal, item_id):
    item = get_item(principal, item_id)
    item.is_active = False
    db.session.commit()
    return item


def record_transaction(principal, item_id, transaction_type, quantity, unit_cost=None, notes=None,
                       reference_number=None):
    """Append a ledger entry and apply it to the cached quantity, floored at 0.

    The floor can make the cached quantity drift from the ledger sum; the entry
    keeps the requested quantity and ``ledger_balance`` reports the gap.
    """
    item = get_item(principal, item_id)

    if transaction_type not in transaction_types:
        raise ValidationError(f"Transaction type must be one of {transaction_types}")
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise ValidationError('Quantity must be an integer')
    if transaction_type in consumption_types and quantity > 0:
        raise ValidationError(f"{transaction_type} transactions must carry a negative quantity")
    if transaction_type == 'Purchase' and quantity <= 0:
        raise ValidationError('Purchase transactions must carry a positive quantity')
    if unit_cost is not None and unit_cost < 0:
        raise ValidationError('Unit cost cannot be negative')

    cost = item.unit_cost if unit_cost is None else unit_cost
    entry = _ledger_entry(principal, item, transaction_type, quantity, cost, notes=notes,
                          reference_number=reference_number)

    values = {
        'current_quantity': case(
            (InventoryItem.current_quantity + quantity < 0, 0),
            else_=InventoryItem.current_quantity + quantity,
        ),
    }
    if transaction_type == 'Purchase' and unit_cost is not None:
        values['unit_cost'] = unit_cost

    before = item.current_quantity
    db.session.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item.id, InventoryItem.clinic_id == principal.clinic_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    if before + quantity < 0:
        logger.warning('stock_clamped_at_zero', item_id=item.id, requested=quantity, available=before)
    return entry


def reserve(principal, item, quantity):
    """Conditionally take ``quantity`` off an item's stock or raise."""
    result = db.session.execute(
        update(InventoryItem)
        .where(
            InventoryItem.id == item.id,
            InventoryItem.clinic_id == principal.clinic_id,
            InventoryItem.current_quantity >= quantity,
        )
        .values(current_quantity=InventoryItem.current_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = db.session.execute(
            select(InventoryItem.current_quantity).where(InventoryItem.id == item.id)
        ).scalar_one()
        logger.info('stock_reservation_failed', item_id=item.id, requested=quantity, available=available)
        raise InsufficientStockError(item.name, available, quantity)
    db.session.expire(item, ['current_quantity', 'updated_at'])


def consume(principal, lines, reference=None, procedure_id=None):
    """Reserve every requested line and book a Usage entry for each.

    Nothing is committed here. The caller commits once all lines succeed or
    rolls the whole set back.
    """
    snapshots = []
    for line in lines:
        item_id = line.get('item_id')
        try:
            quantity = int(line.get('quantity'))
        except (TypeError, ValueError):
            raise ValidationError('Item quantity must be an integer')
        if quantity <= 0:
            raise ValidationError('Item quantity must be greater than 0')

        item = db.session.get(InventoryItem, item_id) if item_id is not None else None
        if not item or item.clinic_id != principal.clinic_id:
            raise NotFoundError(f"Inventory item with ID {item_id} not found")
        if not item.is_active:
            raise ValidationError(f"Inventory item {item.name} is inactive")

        unit_cost = item.unit_cost
        reserve(principal, item, quantity)
        _ledger_entry(principal, item, 'Usage', -quantity, unit_cost,
                      notes=f"Used in procedure: {reference}" if reference else None,
                      procedure_id=procedure_id)
        snapshots.append({
            'item': item,
            'quantity': quantity,
            'unit_cost': unit_cost,
            'total_cost': round(quantity * unit_cost, 2),
        })
    return snapshots


def _expiry_window_days():
    if has_app_context():
        return current_app.config.get('LOW_STOCK_EXPIRY_WINDOW_DAYS', 30)
    return 30


def query_items(principal, category=None, is_active=None, low_stock=False, expiring_within_days=None,
                supplier=None, search=None):
    query = InventoryItem.query.filter(InventoryItem.clinic_id == principal.clinic_id)

    if category:
        query = query.filter(InventoryItem.category == category)
    if is_active is not None:
        query = query.filter(InventoryItem.is_active.is_(bool(is_active)))
    if low_stock:
        query = query.filter(
            InventoryItem.is_active.is_(True),
            InventoryItem.current_quantity <= InventoryItem.reorder_level,
        )
    if expiring_within_days is not None:
        today = utcnow().date()
        query = query.filter(
            InventoryItem.expiry_date.isnot(None),
            InventoryItem.expiry_date >= today,
            InventoryItem.expiry_date <= today + timedelta(days=int(expiring_within_days)),
        )
    if supplier:
        query = query.filter(InventoryItem.supplier_name.ilike(f"%{supplier}%"))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            InventoryItem.name.ilike(pattern),
            InventoryItem.item_code.ilike(pattern),
            InventoryItem.description.ilike(pattern),
        ))

    return query.order_by(InventoryItem.name.asc(), InventoryItem.id.asc())


def list_transactions(principal, item_id=None, transaction_type=None, start_date=None, end_date=None):
    query = InventoryTransaction.query.filter(InventoryTransaction.clinic_id == principal.clinic_id)
    if item_id:
        get_item(principal, item_id)
        query = query.filter(InventoryTransaction.item_id == item_id)
    if transaction_type:
        query = query.filter(InventoryTransaction.transaction_type == transaction_type)
    if start_date:
        query = query.filter(InventoryTransaction.date >= range_start(start_date))
    if end_date:
        query = query.filter(InventoryTransaction.date <= range_end(end_date))
    return query.order_by(InventoryTransaction.date.desc(), InventoryTransaction.id.desc())


def transaction_to_dict(entry):
    data = entry.to_dict()
    data['date'] = entry.date.isoformat() if entry.date else None
    if entry.item is not None:
        data['item'] = {'id': entry.item.id, 'name': entry.item.name, 'item_code': entry.item.item_code}
    return data


def ledger_balance(principal, item_id):
    item = get_item(principal, item_id)
    ledger_quantity = db.session.execute(
        select(func.coalesce(func.sum(InventoryTransaction.quantity), 0))
        .where(InventoryTransaction.item_id == item.id)
    ).scalar_one()
    return {
        'item_id': item.id,
        'ledger_quantity': int(ledger_quantity),
        'cached_quantity': item.current_quantity,
        'consistent': int(ledger_quantity) == item.current_quantity,
    }


def stats(principal):
    clinic_id = principal.clinic_id
    active = InventoryItem.query.filter(
        InventoryItem.clinic_id == clinic_id, InventoryItem.is_active.is_(True)
    )

    total_items = active.count()
    low_stock_items = active.filter(InventoryItem.current_quantity <= InventoryItem.reorder_level).count()
    out_of_stock_items = active.filter(InventoryItem.current_quantity == 0).count()

    total_value = db.session.execute(
        select(func.coalesce(func.sum(InventoryItem.current_quantity * InventoryItem.unit_cost), 0))
        .where(InventoryItem.clinic_id == clinic_id, InventoryItem.is_active.is_(True))
    ).scalar_one()

    today = utcnow().date()
    expiring_soon = active.filter(
        InventoryItem.expiry_date.isnot(None),
        InventoryItem.expiry_date >= today,
        InventoryItem.expiry_date <= today + timedelta(days=_expiry_window_days()),
    ).count()

    category_rows = (
        db.session.query(InventoryItem.category, func.count(InventoryItem.id).label('count'))
        .filter(InventoryItem.clinic_id == clinic_id, InventoryItem.is_active.is_(True))
        .group_by(InventoryItem.category)
        .order_by(func.count(InventoryItem.id).desc(), InventoryItem.category.asc())
        .all()
    )

    used = func.sum(func.abs(InventoryTransaction.quantity))
    most_used = (
        db.session.query(InventoryItem.id, InventoryItem.name, InventoryItem.category, used.label('total_used'))
        .join(InventoryTransaction, InventoryTransaction.item_id == InventoryItem.id)
        .filter(InventoryTransaction.clinic_id == clinic_id, InventoryTransaction.transaction_type == 'Usage')
        .group_by(InventoryItem.id, InventoryItem.name, InventoryItem.category)
        .order_by(used.desc(), InventoryItem.id.asc())
        .limit(5)
        .all()
    )

    recent = (
        InventoryTransaction.query
        .filter(InventoryTransaction.clinic_id == clinic_id)
        .order_by(InventoryTransaction.date.desc(), InventoryTransaction.id.desc())
        .limit(5)
        .all()
    )

    return {
        'total_items': total_items,
        'low_stock_items': low_stock_items,
        'out_of_stock_items': out_of_stock_items,
        'expiring_soon_items': expiring_soon,
        'total_value': round(float(total_value), 2),
        'category_distribution': [{'category': row[0], 'count': row[1]} for row in category_rows],
        'most_used_items': [
            {'item_id': row.id, 'name': row.name, 'category': row.category, 'total_used': int(row.total_used)}
            for row in most_used
        ],
        'recent_transactions': [transaction_to_dict(entry) for entry in recent],
    }
