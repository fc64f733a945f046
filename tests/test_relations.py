"""
Test batched relationship loading.
"""

import pytest

from providerql import Relationship, RelationCache, RelationType, ValidationError, infer_relationships


async def _users(provider, ids=(1, 2, 3, 4)):
    return (await provider.get_many('users', list(ids)))['data']


@pytest.mark.asyncio
async def test_has_many_is_one_query(provider, populated_db, query_counter):
    users = await _users(provider)
    query_counter.reset()
    out = await provider.relations.load_for_records('users', users, {
        'posts': {'type': 'hasMany', 'relatedTable': 'posts', 'localKey': 'id', 'relatedKey': 'user_id'},
    })
    assert query_counter.count == 1
    assert [[p['id'] for p in u['posts']] for u in out] == [[1, 2], [3], [4], []]


@pytest.mark.asyncio
async def test_input_records_are_not_mutated(provider, populated_db):
    users = await _users(provider)
    out = await provider.relations.load_for_records('users', users, {'posts': Relationship.has_many('posts')})
    assert 'posts' not in users[0]
    assert out[0] is not users[0]


@pytest.mark.asyncio
async def test_related_records_are_independent_copies(provider, populated_db):
    posts = (await provider.get_many('posts', [1, 2]))['data']
    out = await provider.relations.load_for_records('posts', posts, {'user': Relationship.belongs_to('users')})
    assert out[0]['user'] == out[1]['user']
    out[0]['user']['name'] = 'changed'
    assert out[1]['user']['name'] == 'Alice Johnson'


@pytest.mark.asyncio
async def test_has_one_defaults(provider, populated_db):
    users = await _users(provider)
    out = await provider.relations.load_for_records('users', users, {'profile': Relationship.has_one('profiles')})
    assert [u['profile']['bio'] if u['profile'] else None for u in out] == ['Alice bio', 'Bob bio', None, None]


@pytest.mark.asyncio
async def test_belongs_to(provider, populated_db):
    comments = (await provider.get_list('comments', sorters=[{'field': 'id'}]))['data']
    out = await provider.relations.load_for_records('comments', comments, {
        'author': Relationship.belongs_to('users', foreign_key='user_id'),
    })
    assert [c['author']['name'] if c['author'] else None for c in out] == [
        'Bob Smith', 'Alice Johnson', 'Bob Smith', None, None,
    ]


@pytest.mark.asyncio
async def test_belongs_to_many_is_two_queries(provider, populated_db, query_counter):
    posts = (await provider.get_many('posts', [1, 2, 3]))['data']
    query_counter.reset()
    out = await provider.relations.load_for_records('posts', posts, {
        'tags': {
            'type': 'belongsToMany',
            'relatedTable': 'tags',
            'pivotTable': 'post_tags',
            'pivotLocalKey': 'post_id',
            'pivotRelatedKey': 'tag_id',
        },
    })
    assert query_counter.count == 2
    assert [[t['name'] for t in p['tags']] for p in out] == [['python', 'sql'], [], ['sql']]


@pytest.mark.asyncio
async def test_belongs_to_many_default_pivot_keys(provider, populated_db):
    posts = (await provider.get_many('posts', [1]))['data']
    out = await provider.relations.load_for_records('posts', posts, {
        'tags': Relationship.belongs_to_many('tags', 'post_tags'),
    })
    assert {t['name'] for t in out[0]['tags']} == {'python', 'sql'}


@pytest.mark.asyncio
async def test_conditions_and_order(provider, populated_db):
    users = await _users(provider, [1])
    out = await provider.relations.load_for_records('users', users, {
        'popular': {
            'type': 'hasMany',
            'relatedTable': 'posts',
            'conditions': [{'field': 'views', 'operator': 'gt', 'value': 5}],
            'orderBy': [{'field': 'views', 'order': 'desc'}],
        },
    })
    assert [p['title'] for p in out[0]['popular']] == ['GraphQL is Great', 'First Post']


@pytest.mark.asyncio
async def test_nested_relations(provider, populated_db):
    users = await _users(provider, [2])
    out = await provider.relations.load_for_records('users', users, {
        'posts': Relationship.has_many('posts', with_={'tags': Relationship.belongs_to_many('tags', 'post_tags')}),
    })
    assert [t['name'] for t in out[0]['posts'][0]['tags']] == ['sql']


@pytest.mark.asyncio
async def test_failed_relationship_degrades(provider, populated_db):
    users = await _users(provider, [1, 2])
    out = await provider.relations.load_for_records('users', users, {
        'widgets': Relationship.has_many('widgets'),
        'gadget': Relationship.has_one('posts', related_key='no_such_column'),
        'mystery': {'type': 'hasSome', 'relatedTable': 'posts'},
        'posts': Relationship.has_many('posts'),
    })
    assert [u['widgets'] for u in out] == [[], []]
    assert [u['gadget'] for u in out] == [None, None]
    assert [u['mystery'] for u in out] == [None, None]
    assert [len(u['posts']) for u in out] == [2, 1]


@pytest.mark.asyncio
async def test_misconfigured_relationship_degrades(provider, populated_db):
    users = await _users(provider, [1, 2])
    out = await provider.relations.load_for_records('users', users, {
        'broken': {'type': 'hasMany'},
        'shapeless': {'relatedTable': 'posts'},
        'odd': 'posts',
        'posts': {'type': 'hasMany', 'relatedTable': 'posts', 'relatedKey': 'user_id'},
    })
    assert [u['broken'] for u in out] == [[], []]
    assert out[0]['broken'] is not out[1]['broken']
    assert [u['shapeless'] for u in out] == [None, None]
    assert [u['odd'] for u in out] == [None, None]
    assert [len(u['posts']) for u in out] == [2, 1]


@pytest.mark.asyncio
async def test_inferred_foreign_key_to_missing_table_is_null(provider, populated_db):
    res = await provider.get_with_relations('posts', 1, ['widget_id', 'user_id'])
    assert 'widget' in res['data']
    assert res['data']['widget'] is None
    assert res['data']['user']['name'] == 'Alice Johnson'


@pytest.mark.asyncio
async def test_validation_errors_propagate(provider, populated_db):
    users = await _users(provider, [1])
    with pytest.raises(ValidationError):
        await provider.relations.load_for_records('users', users, {
            'posts': {
                'type': 'hasMany',
                'relatedTable': 'posts',
                'conditions': [{'field': 'views', 'operator': 'between', 'value': [10]}],
            },
        })


@pytest.mark.asyncio
async def test_no_keys_no_query(provider, populated_db, query_counter):
    query_counter.reset()
    out = await provider.relations.load_for_records('posts', [{'id': 1, 'user_id': None}], {
        'user': Relationship.belongs_to('users'),
    })
    assert out == [{'id': 1, 'user_id': None, 'user': None}]
    assert query_counter.count == 0


@pytest.mark.asyncio
async def test_relation_cache(provider, populated_db, query_counter):
    cache = RelationCache(ttl=60)
    users = await _users(provider)
    rels = {'posts': Relationship.has_many('posts')}
    query_counter.reset()
    first = await provider.relations.load_for_records('users', users, rels, cache=cache)
    second = await provider.relations.load_for_records('users', users, rels, cache=cache)
    assert query_counter.count == 1
    assert first == second
    assert cache.hits == 1
    cache.invalidate('posts')
    assert len(cache) == 0
    await provider.relations.load_for_records('users', users, rels, cache=cache)
    assert query_counter.count == 2


def test_relation_cache_expiry():
    now = [100.0]
    cache = RelationCache(ttl=10, clock=lambda: now[0])
    key = RelationCache.make_key('posts', 'user_id', [2, 1])
    assert key == RelationCache.make_key('posts', 'user_id', [1, 2])
    cache.set(key, [{'id': 1}])
    rows = cache.get(key)
    rows[0]['id'] = 99
    assert cache.get(key) == [{'id': 1}]
    now[0] = 111.0
    assert cache.get(key) is None
    assert cache.misses == 1


@pytest.mark.asyncio
async def test_get_with_relations(provider, populated_db):
    res = await provider.get_with_relations('users', 1, ['posts', 'profiles'])
    user = res['data']
    assert [p['title'] for p in user['posts']] == ['First Post', 'GraphQL is Great']
    assert [p['bio'] for p in user['profiles']] == ['Alice bio']

    res = await provider.get_with_relations('posts', 3, relationship_configs={
        'tags': {'type': 'belongsToMany', 'relatedTable': 'tags', 'pivotTable': 'post_tags'},
        'author': {'type': 'belongsTo', 'relatedTable': 'users', 'foreignKey': 'user_id'},
    })
    assert [t['name'] for t in res['data']['tags']] == ['sql']
    assert res['data']['author']['name'] == 'Bob Smith'


class TestRelationshipConfig:
    def test_type_parsing(self):
        assert RelationType.parse('hasMany') is RelationType.HAS_MANY
        assert RelationType.parse('belongs_to_many') is RelationType.BELONGS_TO_MANY
        assert RelationType.parse('hasSome') is None
        assert RelationType.HAS_MANY.plural and not RelationType.BELONGS_TO.plural

    def test_coerce_maps_camel_case(self):
        rel = Relationship.coerce({'type': 'belongsTo', 'relatedTable': 'users', 'foreignKey': 'author_id'})
        assert rel.related_table == 'users'
        assert rel.foreign_key == 'author_id'
        assert rel.default() is None

    def test_coerce_rejects_incomplete(self):
        with pytest.raises(ValidationError):
            Relationship.coerce({'type': 'hasMany'})
        with pytest.raises(ValidationError):
            Relationship.coerce({'type': 'hasMany', 'relatedTable': 'posts', 'bogus': 1})

    def test_inference(self, schema):
        rels = infer_relationships('posts', ['comments', 'user_id', 'user', 'profile'], schema)
        assert rels['comments'].kind is RelationType.HAS_MANY
        assert rels['comments'].related_key == 'post_id'
        assert rels['user'].kind is RelationType.BELONGS_TO
        assert rels['user'].foreign_key == 'user_id'
        assert rels['profile'].kind is RelationType.BELONGS_TO
        assert rels['profile'].related_table == 'profiles'

    def test_inferred_foreign_key_keeps_missing_table(self, schema):
        rels = infer_relationships('posts', ['widget_id'], schema)
        assert rels['widget'].kind is RelationType.BELONGS_TO
        assert rels['widget'].related_table == 'widgets'
        assert rels['widget'].foreign_key == 'widget_id'
