"""
Test sort descriptors and pagination normalization.
"""

import pytest

from providerql import Pagination, Sorter, ValidationError
from providerql.core.sorting import (
    compile_pagination,
    compile_sort,
    normalize_list_pagination,
    parse_sorters,
    strict_pagination,
)


class TestSorters:
    def test_order_is_normalized(self):
        assert Sorter('name', 'DESC').order == 'desc'
        assert Sorter('name').order == 'asc'

    def test_invalid_order_rejected(self):
        with pytest.raises(ValidationError):
            Sorter('name', 'sideways')

    def test_parse_accepts_dicts_and_tuples(self):
        sorters = parse_sorters([{'field': 'age', 'order': 'desc'}, ('name', 'asc'), Sorter('id')])
        assert [(s.field, s.order) for s in sorters] == [('age', 'desc'), ('name', 'asc'), ('id', 'asc')]

    def test_unknown_sort_field_rejected(self, schema):
        with pytest.raises(ValidationError) as exc:
            compile_sort(schema['users'], [{'field': 'shoe_size', 'order': 'asc'}])
        assert exc.value.field == 'shoe_size'

    def test_precedence_is_preserved(self, schema):
        order = compile_sort(schema['users'], [{'field': 'is_active', 'order': 'desc'}, {'field': 'name'}])
        rendered = [str(o) for o in order]
        assert rendered == ['users.is_active DESC', 'users.name ASC']


class TestPagination:
    def test_defaults(self):
        assert compile_pagination({}) == {'limit': 10, 'offset': 0}
        assert compile_pagination(None) == {}

    def test_page_to_limit_offset(self):
        assert compile_pagination({'page': 3, 'pageSize': 20}) == {'limit': 20, 'offset': 40}
        assert compile_pagination({'page': 2, 'page_size': 5}) == {'limit': 5, 'offset': 5}

    def test_mode_off_disables_paging(self):
        assert compile_pagination({'mode': 'off', 'page': 4}) == {}

    def test_explicit_limit_offset(self):
        assert compile_pagination({'limit': 3, 'offset': 6}) == {'limit': 3, 'offset': 6}

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            Pagination.parse({'current': 1, 'pageSize': 10})

    def test_list_page_below_one_is_clamped(self):
        assert normalize_list_pagination({'page': 0, 'pageSize': 10}).page == 1
        assert normalize_list_pagination({'page': -5, 'pageSize': 10}).to_limit_offset() == {'limit': 10, 'offset': 0}

    def test_list_page_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            normalize_list_pagination({'page': 1, 'pageSize': 0})

    def test_strict_pagination(self):
        assert strict_pagination(2, 25).to_limit_offset() == {'limit': 25, 'offset': 25}
        with pytest.raises(ValidationError):
            strict_pagination(0, 10)
        with pytest.raises(ValidationError):
            strict_pagination(1, 0)

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            Pagination(limit=-1)


@pytest.mark.asyncio
async def test_get_list_sort_and_page(provider, populated_db):
    res = await provider.get_list(
        'posts',
        sorters=[{'field': 'views', 'order': 'desc'}],
        pagination={'page': 1, 'pageSize': 2},
    )
    assert [p['title'] for p in res['data']] == ['GraphQL is Great', 'First Post']
    assert res['total'] == 4

    res = await provider.get_list(
        'posts',
        sorters=[{'field': 'views', 'order': 'desc'}],
        pagination={'page': 2, 'pageSize': 2},
    )
    assert [p['title'] for p in res['data']] == ['SQLAlchemy Tips', 'Getting Started']
    assert res['total'] == 4


@pytest.mark.asyncio
async def test_get_list_page_zero_is_first_page(provider, populated_db):
    res = await provider.get_list('users', sorters=[{'field': 'id'}], pagination={'page': 0, 'pageSize': 10})
    assert len(res['data']) == 4
    assert res['data'][0]['name'] == 'Alice Johnson'


@pytest.mark.asyncio
async def test_get_list_page_size_zero_fails(provider, populated_db):
    with pytest.raises(ValidationError):
        await provider.get_list('users', pagination={'page': 1, 'pageSize': 0})


@pytest.mark.asyncio
async def test_get_list_unknown_sort_field_fails(provider, populated_db):
    with pytest.raises(ValidationError):
        await provider.get_list('users', sorters=[{'field': 'shoe_size', 'order': 'asc'}])


@pytest.mark.asyncio
async def test_total_ignores_pagination(provider, populated_db):
    res = await provider.get_list(
        'posts',
        filters=[{'field': 'published', 'operator': 'eq', 'value': True}],
        sorters=[{'field': 'id'}],
        pagination={'page': 2, 'pageSize': 2},
    )
    assert [p['title'] for p in res['data']] == ['Getting Started']
    assert res['total'] == 3
