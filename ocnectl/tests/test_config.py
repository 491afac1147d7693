import pytest
import yaml

from ocnectl import constants
from ocnectl.config import ClusterConfig, merge
from ocnectl.errors import PreconditionError, ValidationError
from ocnectl.registry import ClusterCache


def test_defaults():
    cc = ClusterConfig()
    assert cc.provider == constants.PROVIDER_LIBVIRT
    assert cc.control_plane_nodes == 1
    assert cc.worker_nodes == 0
    assert cc.kube_version == constants.KUBE_VERSION


def test_load_layers_file_over_user_defaults(home, tmp_path):
    defaults = home / constants.USER_CONFIG_DIR / constants.USER_DEFAULTS_FILE
    defaults.parent.mkdir(parents=True)
    defaults.write_text(yaml.safe_dump({"provider": "oci", "providers": {"oci": {"profile": "TEAM"}}}))

    path = tmp_path / "cluster.yaml"
    path.write_text(yaml.safe_dump({"name": "demo", "workerNodes": 2, "providers": {"oci": {"compartment": "c"}}}))

    cc = ClusterConfig.load(path)
    assert cc.name == "demo"
    assert cc.provider == "oci"
    assert cc.worker_nodes == 2
    assert cc.providers.oci.profile == "TEAM"
    assert cc.providers.oci.compartment == "c"
    assert cc.working_directory == str(tmp_path)


def test_invalid_provider():
    with pytest.raises(ValidationError):
        ClusterConfig.from_dict({"provider": "aws"})


def test_vip_and_load_balancer_are_exclusive():
    with pytest.raises(ValidationError):
        ClusterConfig.from_dict({"virtualIp": "10.0.0.5", "loadBalancer": "10.0.0.6"})


def test_missing_file(tmp_path):
    with pytest.raises(ValidationError):
        ClusterConfig.load(tmp_path / "missing.yaml")


def test_merge():
    base = {"a": {"b": 1, "c": 2}, "d": [1]}
    assert merge(base, {"a": {"c": 3}, "d": [2]}) == {"a": {"b": 1, "c": 3}, "d": [2]}
    assert base["a"]["c"] == 2


def test_cluster_cache(home):
    cache = ClusterCache.load()
    cache.add("demo", ClusterConfig(name="demo"), "/tmp/kubeconfig.demo")
    with pytest.raises(PreconditionError):
        cache.add("demo", ClusterConfig(name="demo"), "/tmp/kubeconfig.demo")

    loaded = ClusterCache.load()
    assert loaded.get("demo").kubeconfig == "/tmp/kubeconfig.demo"
    assert loaded.get("demo").config.name == "demo"

    loaded.delete("demo")
    assert ClusterCache.load().get("demo") is None
