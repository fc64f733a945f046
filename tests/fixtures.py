"""Database fixtures for providerql tests (shared)."""

import pytest
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from .models import User, Profile, Post, Tag, PostTag, Video, Comment, Taggable, Activity


async def create_sample_users(session: AsyncSession):
    """Create and commit the sample users used across tests."""
    users = [
        User(name="Alice Johnson", email="alice@example.com", age=30, is_active=True),
        User(name="Bob Smith", email="bob@example.com", age=25, is_active=True),
        User(name="Charlie Brown", email="charlie@example.com", age=35, is_active=False),
        User(name="Dave NoPosts", email="dave@example.com", age=None, is_active=True),
    ]
    session.add_all(users)
    await session.flush()
    await session.commit()
    return users


@pytest.fixture(scope="function")
async def sample_users(db_session: AsyncSession):
    return await create_sample_users(db_session)


async def create_sample_posts(session: AsyncSession, users):
    """Create and commit the sample posts with deterministic timestamps."""
    user1, user2, user3, _ = users
    base = datetime(2024, 1, 1, 12, 0, 0)
    posts = [
        Post(title="First Post", content="Hello world!", user_id=user1.id, views=10, rating=4.0,
             published=True, created_at=base),
        Post(title="GraphQL is Great", content="I love GraphQL! 100% sure", user_id=user1.id, views=20,
             rating=3.0, published=True, created_at=base + timedelta(days=1)),
        Post(title="SQLAlchemy Tips", content="Some useful tips...", user_id=user2.id, views=5,
             rating=None, published=False, created_at=base + timedelta(days=2)),
        Post(title="Getting Started", content="A beginner's guide", user_id=user3.id, views=0,
             rating=5.0, published=True, created_at=base + timedelta(days=3)),
    ]
    session.add_all(posts)
    await session.flush()
    await session.commit()
    return posts


@pytest.fixture(scope="function")
async def sample_posts(db_session: AsyncSession, sample_users):
    return await create_sample_posts(db_session, sample_users)


async def create_sample_relations(session: AsyncSession, users, posts):
    """Profiles, tags (plain and polymorphic), videos, comments and activities."""
    user1, user2, _, _ = users
    post1, post2, post3, _ = posts
    profiles = [
        Profile(user_id=user1.id, bio="Alice bio"),
        Profile(user_id=user2.id, bio="Bob bio"),
    ]
    tags = [Tag(name="python"), Tag(name="sql"), Tag(name="news")]
    videos = [
        Video(title="Intro Video", url="https://example.com/v/1"),
        Video(title="Deep Dive", url="https://example.com/v/2"),
    ]
    session.add_all(profiles + tags + videos)
    await session.flush()
    python, sql, news = tags
    video1, video2 = videos
    post_tags = [
        PostTag(post_id=post1.id, tag_id=python.id),
        PostTag(post_id=post1.id, tag_id=sql.id),
        PostTag(post_id=post3.id, tag_id=sql.id),
    ]
    comments = [
        Comment(body="Nice post", commentable_type="post", commentable_id=post1.id, user_id=user2.id),
        Comment(body="Great video", commentable_type="video", commentable_id=video1.id, user_id=user1.id),
        Comment(body="Agreed", commentable_type="post", commentable_id=post2.id, user_id=user2.id),
        Comment(body="Orphan", commentable_type="post", commentable_id=999, user_id=None),
        Comment(body="Unknown type", commentable_type="audio", commentable_id=1, user_id=None),
    ]
    taggables = [
        Taggable(tag_id=python.id, taggable_type="post", taggable_id=post1.id, note="primary"),
        Taggable(tag_id=python.id, taggable_type="video", taggable_id=video1.id, note="secondary"),
        Taggable(tag_id=sql.id, taggable_type="post", taggable_id=post3.id, note=None),
        Taggable(tag_id=news.id, taggable_type="video", taggable_id=video2.id, note=None),
    ]
    session.add_all(post_tags + comments + taggables)
    await session.flush()
    activities = [
        Activity(action="created", subject_type="comment", subject_id=comments[0].id),
        Activity(action="liked", subject_type="comment", subject_id=comments[1].id),
        Activity(action="published", subject_type="post", subject_id=post1.id),
    ]
    session.add_all(activities)
    await session.flush()
    await session.commit()
    return {
        'profiles': profiles,
        'tags': tags,
        'videos': videos,
        'post_tags': post_tags,
        'comments': comments,
        'taggables': taggables,
        'activities': activities,
    }


@pytest.fixture(scope="function")
async def populated_db(db_session: AsyncSession, sample_users, sample_posts):
    related = await create_sample_relations(db_session, sample_users, sample_posts)
    return {
        'users': sample_users,
        'posts': sample_posts,
        **related,
    }
