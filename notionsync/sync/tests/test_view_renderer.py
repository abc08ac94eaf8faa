"""
Tests for database view filtering, sorting, pagination and property formatting.
"""

import pytest

from ..error_tracker import ViewConfigError
from ..view_renderer import PropertyFormatter, ViewRenderer, parse_date
from .fakes import text_span


def make_row(row_id, status=None, date=None, name=None, done=None):
    properties = {'Name': {'type': 'title', 'title': [text_span(name or row_id)]}}
    if status is not None:
        properties['Status'] = {'type': 'status', 'status': {'name': status, 'color': 'green'}}
    if date is not None:
        properties['Date'] = {'type': 'date', 'date': {'start': date}}
    if done is not None:
        properties['Done'] = {'type': 'checkbox', 'checkbox': done}
    return {'id': row_id, 'properties': properties}


@pytest.fixture
def rows():
    # 25 rows: every third is a draft; dates repeat so sorting needs the id tie-break
    result = []
    for index in range(25):
        status = 'Draft' if index % 3 == 0 else 'Published'
        result.append(make_row(f"row-{index:02d}", status=status, date=f"2024-01-{(index % 5) + 1:02d}"))
    return result


class TestViewRenderer:

    def setup_method(self):
        self.renderer = ViewRenderer()

    def test_filter_sort_and_paginate(self, rows):
        filters = [{'property': 'Status', 'equals': 'Published'}]
        sorts = [{'property': 'Date', 'direction': 'descending'}]

        first = self.renderer.render_page(rows, filters, sorts, page_size=10, page=1)
        second = self.renderer.render_page(rows, filters, sorts, page_size=10, page=2)

        assert first.total == 16
        assert first.page_count == 2
        assert first.has_more and not second.has_more
        assert len(first.records) == 10 and len(second.records) == 6

        records = first.records + second.records
        dates = [record.properties['Date']['iso'] for record in records]
        assert dates == sorted(dates, reverse=True)
        assert all(record.properties['Status']['label'] == 'Published' for record in records)
        # Same date: ids ascending
        same_day = [record.id for record in records if record.properties['Date']['iso'] == '2024-01-05']
        assert same_day == sorted(same_day)
        assert same_day == ['row04', 'row14', 'row19']

    def test_ordering_is_stable_across_requests(self, rows):
        sorts = [{'property': 'Status', 'direction': 'asc'}]
        first = [record.id for record in self.renderer.render(rows, sorts=sorts)]
        second = [record.id for record in self.renderer.render(list(reversed(rows)), sorts=sorts)]

        assert first == second
        assert first[0] == 'row00'

    def test_missing_values_sort_last_in_both_directions(self):
        rows = [make_row("a", date="2024-03-01"), make_row("b"), make_row("c", date="2024-01-01")]

        ascending = self.renderer.render(rows, sorts=[{'property': 'Date', 'direction': 'ascending'}])
        descending = self.renderer.render(rows, sorts=[{'property': 'Date', 'direction': 'descending'}])

        assert [record.id for record in ascending] == ['c', 'a', 'b']
        assert [record.id for record in descending] == ['a', 'c', 'b']

    def test_rows_without_the_property_do_not_match(self):
        rows = [make_row("a", status="Published"), make_row("b")]
        records = self.renderer.render(rows, filters=[{'property': 'Status', 'equals': 'Published'}])

        assert [record.id for record in records] == ['a']

    def test_date_and_text_filters(self):
        rows = [
            make_row("a", date="2024-01-10", name="Quarterly report"),
            make_row("b", date="2024-02-10T09:30:00Z", name="Weekly notes"),
            make_row("c", date="2024-03-10", name="Annual REPORT"),
        ]

        before = self.renderer.render(rows, filters=[{'property': 'Date', 'before': '2024-02-01'}])
        after = self.renderer.render(rows, filters=[{'property': 'Date', 'after': '2024-02-01'}])
        same_day = self.renderer.render(rows, filters=[{'property': 'Date', 'equals': '2024-02-10'}])
        contains = self.renderer.render(rows, filters=[{'property': 'Name', 'contains': 'report'}])

        assert [record.id for record in before] == ['a']
        assert [record.id for record in after] == ['b', 'c']
        assert [record.id for record in same_day] == ['b']
        assert [record.id for record in contains] == ['a', 'c']

    def test_checkbox_filter(self):
        rows = [make_row("a", done=True), make_row("b", done=False)]
        records = self.renderer.render(rows, filters=[{'property': 'Done', 'equals': True}])

        assert [record.id for record in records] == ['a']

    def test_page_past_the_end_is_empty(self, rows):
        page = self.renderer.render_page(rows, page_size=10, page=4)

        assert page.records == []
        assert page.page_count == 3
        assert page.to_dict()['has_more'] is False

    @pytest.mark.parametrize('kwargs', [
        {'page_size': 0},
        {'page_size': 10, 'page': 0},
        {'filters': [{'equals': 'Published'}]},
        {'filters': [{'property': 'Status'}]},
        {'filters': [{'property': 'Status', 'equals': 'a', 'contains': 'b'}]},
        {'filters': [{'property': 'Status', 'contains': 'Pub'}]},
        {'filters': [{'property': 'Date', 'before': 'not a date'}]},
        {'sorts': [{'property': 'Date', 'direction': 'sideways'}]},
        {'sorts': [{'direction': 'asc'}]},
    ])
    def test_invalid_configuration_raises(self, rows, kwargs):
        with pytest.raises(ViewConfigError):
            self.renderer.render(rows, **kwargs)


class TestPropertyFormatter:

    def setup_method(self):
        self.formatter = PropertyFormatter(link_for=lambda row_id: f"https://site.test/{row_id}")

    def test_title_links_to_row(self):
        formatted = self.formatter.format({'type': 'title', 'title': [text_span("Launch")]}, "row1")
        assert formatted == {'type': 'title', 'text': "Launch", 'link': "https://site.test/row1"}

    def test_select_and_multi_select(self):
        select = self.formatter.format({'type': 'select', 'select': {'name': "High", 'color': "red"}})
        tags = self.formatter.format({'type': 'multi_select', 'multi_select': [{'name': "a"}, {'name': "b", 'color': "blue"}]})

        assert select['label'] == "High" and select['color'] == "red"
        assert tags['labels'] == [{'label': "a", 'color': "default"}, {'label': "b", 'color': "blue"}]

    def test_dates(self):
        single = self.formatter.format({'type': 'date', 'date': {'start': "2024-01-05"}})
        timed = self.formatter.format({'type': 'date', 'date': {'start': "2024-01-05T14:30:00Z"}})
        ranged = self.formatter.format({'type': 'date', 'date': {'start': "2024-01-05", 'end': "2024-01-07"}})

        assert single['display'] == "January 5, 2024"
        assert timed['display'] == "January 5, 2024 14:30"
        assert ranged['display'].startswith("January 5, 2024") and ranged['display'].endswith("January 7, 2024")
        assert ranged['end'] == "2024-01-07"

    def test_contact_fields(self):
        assert self.formatter.format({'type': 'email', 'email': "a@b.test"})['link'] == "mailto:a@b.test"
        assert self.formatter.format({'type': 'phone_number', 'phone_number': "+1 555"})['link'] == "tel:+1 555"
        assert self.formatter.format({'type': 'url', 'url': None}) == {'type': 'url', 'text': '', 'link': None}

    def test_numbers_and_checkbox(self):
        assert self.formatter.format({'type': 'number', 'number': 1234567})['display'] == "1,234,567"
        assert self.formatter.format({'type': 'number', 'number': 2.5})['display'] == "2.5"
        assert self.formatter.format({'type': 'checkbox', 'checkbox': True})['checked'] is True

    def test_relation_links_related_rows(self):
        formatted = self.formatter.format({'type': 'relation', 'relation': [{'id': "Row-2"}]})
        assert formatted['ids'] == ["row2"]
        assert formatted['links'] == ["https://site.test/row2"]

    def test_unknown_type_degrades_to_raw_text(self):
        formatted = self.formatter.format({'type': 'formula', 'formula': {'type': 'string', 'string': "42 days"}})
        assert formatted == {'type': 'formula', 'text': "42 days"}


def test_parse_date_normalizes_to_naive_utc():
    assert parse_date("2024-01-05T10:00:00+02:00").hour == 8
    assert parse_date("2024-01-05").tzinfo is None
    assert parse_date("garbage") is None
