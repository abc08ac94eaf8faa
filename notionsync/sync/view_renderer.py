"""
Database view rendering.

Applies a view configuration (filters, sorts, page size) to fetched database
rows and formats every property for display. Rows use the remote shape::

    {'id': '...', 'properties': {'Name': {'type': 'title', 'title': [...]}, ...}}

Sorting is deterministic across requests: after the configured keys, rows
are ordered by row id ascending, and missing values always sort last.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from functools import cmp_to_key
from typing import Any, Callable, Dict, List, Optional

from .converters.rich_text import plain_text
from .error_tracker import ViewConfigError
from .logging_manager import get_logger
from .models import normalize_external_id

logger = get_logger(__name__)

TEXT_TYPES = ('title', 'rich_text', 'url', 'email', 'phone_number')
SELECT_TYPES = ('select', 'status')

# Filter operators allowed per property type
FILTER_OPERATORS = {
    **{prop_type: ('equals', 'contains') for prop_type in TEXT_TYPES},
    **{prop_type: ('equals',) for prop_type in SELECT_TYPES},
    'date': ('before', 'after', 'equals'),
    'checkbox': ('equals',),
}
ALL_OPERATORS = ('equals', 'contains', 'before', 'after')

DESCENDING = ('desc', 'descending')
ASCENDING = ('asc', 'ascending')


def parse_date(value: Any) -> Optional[datetime]:
    """ISO date or datetime string -> naive UTC datetime (date-only values at midnight)."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _has_time(value: Any) -> bool:
    return isinstance(value, str) and 'T' in value


def property_value(prop: Optional[Dict[str, Any]]) -> Any:
    """The comparable value of one property, or None when it is empty."""
    if not prop:
        return None
    prop_type = prop.get('type')
    raw = prop.get(prop_type)
    if prop_type in ('title', 'rich_text'):
        return plain_text(raw or [])
    if prop_type in SELECT_TYPES:
        return raw.get('name') if raw else None
    if prop_type == 'multi_select':
        return [option.get('name') for option in raw or []]
    if prop_type == 'date':
        return parse_date(raw.get('start')) if raw else None
    if prop_type == 'checkbox':
        return bool(raw)
    return raw


class PropertyFormatter:
    """
    Type-directed formatting of row properties.
    Unknown property types degrade to their raw text.
    """

    def __init__(self, link_for: Optional[Callable[[str], Optional[str]]] = None):
        self.link_for = link_for

    def format(self, prop: Dict[str, Any], row_id: Optional[str] = None) -> Dict[str, Any]:
        prop_type = prop.get('type', 'unknown')
        handler = getattr(self, f'_format_{prop_type}', None)
        raw = prop.get(prop_type)
        if handler is None:
            return {'type': prop_type, 'text': self._raw_text(raw if raw is not None else prop)}
        formatted = handler(raw, row_id)
        formatted['type'] = prop_type
        return formatted

    def _raw_text(self, raw: Any) -> str:
        if raw is None:
            return ''
        if isinstance(raw, list):
            if raw and all(isinstance(item, dict) for item in raw):
                return plain_text(raw) or ', '.join(str(item.get('name') or item.get('id', '')) for item in raw)
            return ', '.join(str(item) for item in raw)
        if isinstance(raw, dict):
            return str(raw.get('name') or raw.get('string') or raw.get('number') or raw.get('id') or '')
        return str(raw)

    def _format_title(self, raw, row_id):
        link = self.link_for(row_id) if self.link_for and row_id else None
        return {'text': plain_text(raw or []), 'link': link}

    def _format_rich_text(self, raw, row_id):
        return {'text': plain_text(raw or [])}

    def _format_select(self, raw, row_id):
        if not raw:
            return {'label': None, 'color': None}
        return {'label': raw.get('name'), 'color': raw.get('color', 'default')}

    _format_status = _format_select

    def _format_multi_select(self, raw, row_id):
        return {'labels': [{'label': option.get('name'), 'color': option.get('color', 'default')} for option in raw or []]}

    def _format_date(self, raw, row_id):
        if not raw or not raw.get('start'):
            return {'iso': None, 'display': ''}
        start = raw['start']
        display = self._display_date(start)
        if raw.get('end'):
            display = f"{display} → {self._display_date(raw['end'])}"
        return {'iso': start, 'end': raw.get('end'), 'display': display}

    def _display_date(self, value: str) -> str:
        parsed = parse_date(value)
        if parsed is None:
            return value
        text = f"{parsed:%B} {parsed.day}, {parsed.year}"
        if _has_time(value):
            text += f" {parsed:%H:%M}"
        return text

    def _format_checkbox(self, raw, row_id):
        return {'checked': bool(raw)}

    def _format_number(self, raw, row_id):
        if raw is None:
            return {'value': None, 'display': ''}
        display = f"{raw:,}" if isinstance(raw, int) else f"{raw:,.2f}".rstrip('0').rstrip('.')
        return {'value': raw, 'display': display}

    def _format_url(self, raw, row_id):
        return {'text': raw or '', 'link': raw or None}

    def _format_email(self, raw, row_id):
        return {'text': raw or '', 'link': f"mailto:{raw}" if raw else None}

    def _format_phone_number(self, raw, row_id):
        return {'text': raw or '', 'link': f"tel:{raw}" if raw else None}

    def _format_people(self, raw, row_id):
        return {'text': ', '.join(person.get('name') or person.get('id', '') for person in raw or [])}

    def _format_relation(self, raw, row_id):
        ids = [normalize_external_id(item['id']) for item in raw or [] if item.get('id')]
        links = [self.link_for(related) for related in ids] if self.link_for else [None] * len(ids)
        return {'ids': ids, 'links': links}


@dataclass
class FormattedRecord:
    id: str
    properties: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'properties': self.properties}


@dataclass
class ViewPage:
    records: List[FormattedRecord]
    total: int
    page: int
    page_count: int

    @property
    def has_more(self) -> bool:
        return self.page < self.page_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'records': [record.to_dict() for record in self.records],
            'total': self.total,
            'page': self.page,
            'page_count': self.page_count,
            'has_more': self.has_more,
        }


class ViewRenderer:
    """
    Filters, sorts, paginates and formats database rows.

    Filters are dicts with a ``property`` and exactly one operator key::

        {'property': 'Status', 'equals': 'Published'}
        {'property': 'Date', 'before': '2024-06-01'}

    Sorts are ``{'property': 'Date', 'direction': 'descending'}``.
    """

    def __init__(self, formatter: Optional[PropertyFormatter] = None):
        self.formatter = formatter or PropertyFormatter()

    def render(self, rows: List[Dict[str, Any]], filters: Optional[List[Dict[str, Any]]] = None,
               sorts: Optional[List[Dict[str, Any]]] = None, page_size: Optional[int] = None,
               page: int = 1) -> List[FormattedRecord]:
        return self.render_page(rows, filters, sorts, page_size, page).records

    def render_page(self, rows: List[Dict[str, Any]], filters: Optional[List[Dict[str, Any]]] = None,
                    sorts: Optional[List[Dict[str, Any]]] = None, page_size: Optional[int] = None,
                    page: int = 1) -> ViewPage:
        if page_size is not None and page_size < 1:
            raise ViewConfigError(f"page_size must be at least 1, got {page_size}")
        if page < 1:
            raise ViewConfigError(f"page must be at least 1, got {page}")
        filters = [self._parse_filter(item) for item in filters or []]
        sorts = [self._parse_sort(item) for item in sorts or []]

        matched = [row for row in rows if all(self._matches(row, *f) for f in filters)]
        ordered = sorted(matched, key=cmp_to_key(lambda a, b: self._compare(a, b, sorts)))

        total = len(ordered)
        if page_size is None:
            page_count = 1
            window = ordered
        else:
            page_count = max(1, -(-total // page_size))
            start = (page - 1) * page_size
            window = ordered[start:start + page_size]

        logger.debug(f"Rendered view: {total} of {len(rows)} rows matched, page {page}/{page_count}")
        return ViewPage(
            records=[self.format_row(row) for row in window],
            total=total,
            page=page,
            page_count=page_count,
        )

    def format_row(self, row: Dict[str, Any]) -> FormattedRecord:
        row_id = normalize_external_id(row.get('id', ''))
        return FormattedRecord(
            id=row_id,
            properties={name: self.formatter.format(prop, row_id) for name, prop in row.get('properties', {}).items()},
        )

    # Filters

    def _parse_filter(self, definition: Dict[str, Any]):
        name = definition.get('property')
        if not name:
            raise ViewConfigError(f"Filter without a property: {definition}")
        operators = [key for key in definition if key in ALL_OPERATORS]
        if len(operators) != 1:
            raise ViewConfigError(f"Filter on {name} needs exactly one of {', '.join(ALL_OPERATORS)}")
        operator = operators[0]
        return name, operator, definition[operator]

    def _matches(self, row: Dict[str, Any], name: str, operator: str, expected: Any) -> bool:
        prop = row.get('properties', {}).get(name)
        if prop is None:
            return False
        prop_type = prop.get('type')
        allowed = FILTER_OPERATORS.get(prop_type)
        if allowed is None or operator not in allowed:
            raise ViewConfigError(f"Operator '{operator}' is not supported for {prop_type} property {name}")
        value = property_value(prop)

        if prop_type == 'date':
            target = parse_date(expected)
            if target is None:
                raise ViewConfigError(f"Invalid date in filter on {name}: {expected}")
            if value is None:
                return False
            if operator == 'before':
                return value < target
            if operator == 'after':
                return value > target
            return value.date() == target.date()

        if prop_type == 'checkbox':
            return value == bool(expected)

        if value is None:
            return False
        if operator == 'contains':
            return str(expected).lower() in str(value).lower()
        return str(value) == str(expected)

    # Sorting

    def _parse_sort(self, definition: Dict[str, Any]):
        name = definition.get('property')
        if not name:
            raise ViewConfigError(f"Sort without a property: {definition}")
        direction = str(definition.get('direction', 'ascending')).lower()
        if direction not in ASCENDING + DESCENDING:
            raise ViewConfigError(f"Unknown sort direction '{direction}' for {name}")
        return name, direction in DESCENDING

    def _sort_value(self, row: Dict[str, Any], name: str) -> Any:
        value = property_value(row.get('properties', {}).get(name))
        if isinstance(value, str):
            return value.lower() if value else None
        if isinstance(value, list):
            return ', '.join(str(item) for item in value).lower() or None
        return value

    def _compare(self, a: Dict[str, Any], b: Dict[str, Any], sorts) -> int:
        for name, descending in sorts:
            left, right = self._sort_value(a, name), self._sort_value(b, name)
            if left == right:
                continue
            # Missing values last in either direction
            if left is None:
                return 1
            if right is None:
                return -1
            try:
                result = -1 if left < right else 1
            except TypeError:
                result = -1 if str(left) < str(right) else 1
            return -result if descending else result
        a_id = normalize_external_id(a.get('id', ''))
        b_id = normalize_external_id(b.get('id', ''))
        return (a_id > b_id) - (a_id < b_id)
