import pytest

from ocnectl.config import ClusterConfig
from ocnectl.errors import LockError, PreconditionError
from ocnectl.registry import ClusterCache
from ocnectl.utils.lock import PidLock


def test_add_and_get(home):
    ClusterCache.load().add("demo", ClusterConfig(name="demo"), "/tmp/kubeconfig")

    cached = ClusterCache.load().get("demo")
    assert cached.config.name == "demo"
    assert cached.kubeconfig == "/tmp/kubeconfig"


def test_concurrent_caches_keep_each_others_entries(home):
    first = ClusterCache.load()
    second = ClusterCache.load()

    first.add("one", ClusterConfig(name="one"), "")
    second.add("two", ClusterConfig(name="two"), "")

    assert sorted(ClusterCache.load().clusters) == ["one", "two"]

    first.delete("two")
    assert sorted(ClusterCache.load().clusters) == ["one"]


def test_add_existing_cluster(home):
    stale = ClusterCache.load()
    ClusterCache.load().add("demo", ClusterConfig(name="demo"), "")
    with pytest.raises(PreconditionError):
        stale.add("demo", ClusterConfig(name="demo"), "")


def test_delete_missing_cluster(home):
    ClusterCache.load().delete("missing")
    assert not ClusterCache().path.exists()


def test_add_waits_for_lock(home, monkeypatch):
    monkeypatch.setattr(PidLock.wait_for, "__defaults__", (0.05,))
    holder = PidLock()
    holder.wait_for()
    try:
        with pytest.raises(LockError):
            ClusterCache.load().add("demo", ClusterConfig(name="demo"), "")
    finally:
        holder.drop()
    assert ClusterCache.load().get("demo") is None
