"""Tests for the user profile store: idempotent creation and atomic increments."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from civicmap.domain import errors
from civicmap.domain.models import ProfileDefaults, UserProfile


def test_ensure_profile_creates_with_defaults(profile_store):
    profile = profile_store.ensure_profile("u1", ProfileDefaults(points=0, display_name="Ana"))
    assert profile == UserProfile(uid="u1", display_name="Ana", points=0)
    assert profile_store.get_profile("u1").display_name == "Ana"


def test_ensure_profile_is_idempotent(profile_store):
    profile_store.ensure_profile("u1", ProfileDefaults(points=0))
    profile_store.increment_points("u1", 20)

    again = profile_store.ensure_profile("u1", ProfileDefaults(points=0, display_name="Other"))
    assert again.points == 20
    assert again.display_name is None


def test_ensure_profile_twice_same_points(profile_store):
    first = profile_store.ensure_profile("u1", ProfileDefaults(points=7))
    second = profile_store.ensure_profile("u1", ProfileDefaults(points=99))
    assert first.points == second.points == 7


def test_concurrent_ensure_profile(profile_store):
    with ThreadPoolExecutor(max_workers=4) as pool:
        profiles = list(pool.map(lambda _: profile_store.ensure_profile("u1", ProfileDefaults(points=3)), range(4)))
    assert {p.points for p in profiles} == {3}


def test_get_missing_profile(profile_store):
    assert profile_store.get_profile("ghost") is None


def test_increment_points(profile_store):
    profile_store.ensure_profile("u1", ProfileDefaults())
    assert profile_store.increment_points("u1", 20).points == 20
    assert profile_store.increment_points("u1", 5).points == 25


@pytest.mark.parametrize("delta", [0, -5])
def test_increment_must_be_positive(profile_store, delta):
    profile_store.ensure_profile("u1", ProfileDefaults(points=10))
    with pytest.raises(errors.ValidationError):
        profile_store.increment_points("u1", delta)
    assert profile_store.get_profile("u1").points == 10


def test_increment_missing_profile(profile_store):
    with pytest.raises(errors.ProfileNotFound):
        profile_store.increment_points("ghost", 5)


def test_concurrent_increments_sum(profile_store):
    """N concurrent increments of d add exactly N*d."""
    profile_store.ensure_profile("u1", ProfileDefaults())
    n, delta = 25, 5

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: profile_store.increment_points("u1", delta), range(n)))

    assert profile_store.get_profile("u1").points == n * delta


def test_subscribe_pushes_profile(profile_store):
    snapshots = []
    profile_store.subscribe("u1", snapshots.append)
    assert snapshots == [UserProfile(uid="u1", points=0)]

    profile_store.ensure_profile("u1", ProfileDefaults(points=0, display_name="Ana"))
    profile_store.increment_points("u1", 10)
    assert [s.points for s in snapshots] == [0, 0, 10]
    assert snapshots[-1].display_name == "Ana"


def test_subscribe_only_own_profile(profile_store):
    snapshots = []
    profile_store.ensure_profile("u1", ProfileDefaults())
    profile_store.ensure_profile("u2", ProfileDefaults())
    sub = profile_store.subscribe("u1", snapshots.append)

    profile_store.increment_points("u2", 10)
    assert len(snapshots) == 1

    sub.unsubscribe()
    profile_store.increment_points("u1", 10)
    assert len(snapshots) == 1


def test_listener_failure_does_not_break_write(profile_store):
    delivered = []

    def broken(_):
        raise RuntimeError("listener crashed")

    profile_store.ensure_profile("u1", ProfileDefaults())
    profile_store.feed.subscribe("profile:u1", broken)
    profile_store.subscribe("u1", delivered.append)

    assert profile_store.increment_points("u1", 5).points == 5
    assert delivered[-1].points == 5
