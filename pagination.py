from flask import current_app, has_app_context

from errors import ValidationError


def page_params(page=None, limit=None):
    """Coerce ``page``/``limit`` into sane ints bounded by the app config."""
    default_size, max_size = 20, 100
    if has_app_context():
        default_size = current_app.config.get('DEFAULT_PAGE_SIZE', default_size)
        max_size = current_app.config.get('MAX_PAGE_SIZE', max_size)
    try:
        page = int(page) if page not in (None, '') else 1
        limit = int(limit) if limit not in (None, '') else default_size
    except (TypeError, ValueError):
        raise ValidationError('page and limit must be integers')
    if page < 1 or limit < 1:
        raise ValidationError('page and limit must be positive')
    return page, min(limit, max_size)


def paginate(query, page=None, limit=None, serialize=None):
    page, limit = page_params(page, limit)
    result = query.paginate(page=page, per_page=limit, error_out=False)
    serialize = serialize or (lambda obj: obj.to_dict())
    return {
        'data': [serialize(obj) for obj in result.items],
        'total': result.total,
        'page': page,
        'pages': result.pages,
    }
