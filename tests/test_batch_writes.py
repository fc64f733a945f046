"""
Test batch create/update/delete on both write paths.

The RETURNING path is what SQLite/PostgreSQL use; the two-step path (write,
then re-fetch) is what MySQL uses and is forced here with
``supports_returning=False``.
"""

import pytest

from providerql import ProviderConfig, QueryError, ValidationError, create_provider


@pytest.fixture(params=['returning', 'two_step'])
def batch_provider(request, engine, schema):
    if request.param == "two_step" and engine.dialect.name == "postgresql":
        pytest.skip("PostgreSQL has no last-insert id to re-fetch batch inserts by")
    config = ProviderConfig(
        create_batch_size=7,
        write_batch_size=3,
        supports_returning=None if request.param == 'returning' else False,
    )
    return create_provider(engine, schema, config)


@pytest.mark.asyncio
async def test_create_many_preserves_order_across_chunks(batch_provider, populated_db):
    rows = [{'name': f'tag-{i:03d}'} for i in range(25)]
    res = await batch_provider.create_many('tags', rows)
    data = res['data']
    assert len(data) == 25
    assert [t['name'] for t in data] == [r['name'] for r in rows]
    # ids were assigned after the three seeded tags, in input order
    assert [t['id'] for t in data] == list(range(4, 29))


@pytest.mark.asyncio
async def test_create_many_default_batch_size(provider, populated_db):
    rows = [{'name': f'bulk-{i}'} for i in range(250)]
    data = (await provider.create_many('tags', rows))['data']
    assert [t['name'] for t in data] == [r['name'] for r in rows]
    assert (await provider.get_list('tags', pagination={'mode': 'off'}))['total'] == 253


@pytest.mark.asyncio
async def test_create_many_two_step_large(two_step_provider, populated_db):
    rows = [{'name': f'bulk-{i}'} for i in range(250)]
    data = (await two_step_provider.create_many('tags', rows))['data']
    assert [t['name'] for t in data] == [r['name'] for r in rows]
    assert len({t['id'] for t in data}) == 250


@pytest.mark.asyncio
async def test_create_many_heterogeneous_rows(batch_provider, populated_db):
    rows = [
        {'name': 'Ann', 'email': 'ann@example.com'},
        {'name': 'Ben', 'email': 'ben@example.com', 'age': 50},
        {'name': 'Cid', 'email': 'cid@example.com', 'is_active': False},
    ]
    data = (await batch_provider.create_many('users', rows))['data']
    assert [u['name'] for u in data] == ['Ann', 'Ben', 'Cid']
    assert data[1]['age'] == 50
    assert data[2]['is_active'] is False


@pytest.mark.asyncio
async def test_create_many_with_explicit_ids(batch_provider, populated_db):
    rows = [{'id': 40, 'name': 'forty'}, {'id': 30, 'name': 'thirty'}]
    data = (await batch_provider.create_many('tags', rows))['data']
    assert [(t['id'], t['name']) for t in data] == [(40, 'forty'), (30, 'thirty')]


@pytest.mark.asyncio
async def test_create_many_empty(batch_provider, populated_db):
    assert (await batch_provider.create_many('tags', []))['data'] == []


@pytest.mark.asyncio
async def test_create_many_is_atomic(batch_provider, populated_db):
    rows = [{'name': f'ok-{i}'} for i in range(10)] + [{'name': 'python'}]
    with pytest.raises(QueryError):
        await batch_provider.create_many('tags', rows)
    assert (await batch_provider.get_list('tags'))['total'] == 3


@pytest.mark.asyncio
async def test_update_many_follows_id_order(batch_provider, populated_db):
    ids = [4, 2, 1, 3, 999]
    data = (await batch_provider.update_many('posts', ids, {'views': 100}))['data']
    assert [p['id'] for p in data] == [4, 2, 1, 3]
    assert all(p['views'] == 100 for p in data)
    untouched = (await batch_provider.get_list('posts', filters=[{'field': 'views', 'operator': 'ne', 'value': 100}]))
    assert untouched['total'] == 0


@pytest.mark.asyncio
async def test_update_many_rejects_primary_key(batch_provider, populated_db):
    with pytest.raises(ValidationError):
        await batch_provider.update_many('posts', [1, 2], {'id': 10})


@pytest.mark.asyncio
async def test_update_many_empty(batch_provider, populated_db):
    assert (await batch_provider.update_many('posts', [], {'views': 1}))['data'] == []
    with pytest.raises(ValidationError):
        await batch_provider.update_many('posts', [1], {})


@pytest.mark.asyncio
async def test_delete_many(batch_provider, populated_db):
    data = (await batch_provider.delete_many('tags', [3, 1, 77]))['data']
    assert [t['name'] for t in data] == ['news', 'python']
    remaining = await batch_provider.get_list('tags')
    assert [t['name'] for t in remaining['data']] == ['sql']
    assert (await batch_provider.delete_many('tags', []))['data'] == []
