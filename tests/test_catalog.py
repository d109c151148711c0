import pytest

from release_converger.catalog import builtin_services, order_services, select_services
from release_converger.errors import ConfigError
from tests.fakes import make_spec


def test_builtin_catalog():
    specs = builtin_services("infra")
    assert [s.name for s in specs] == ["postgresql", "redis", "rabbitmq"]
    assert all(s.namespace == "infra" for s in specs)
    for spec in specs:
        assert set(spec.credential_value_paths) == set(spec.credential_keys)
        assert any(ref.kind == spec.workload.kind and ref.name == spec.workload.name
                   for ref in spec.ownership_resources)


def test_select_all_in_dependency_order():
    assert [s.name for s in select_services([], "infra")] == ["postgresql", "redis", "rabbitmq"]


def test_select_named_services_keeps_catalog_order():
    assert [s.name for s in select_services(["rabbitmq", "redis", "postgresql"], "infra")] == [
        "postgresql", "redis", "rabbitmq",
    ]


def test_only_component_narrows_selection():
    assert [s.name for s in select_services([], "infra", only="redis")] == ["redis"]
    assert [s.name for s in select_services(["redis", "rabbitmq"], "infra", only="redis")] == ["redis"]


def test_only_component_excluding_request_is_an_error():
    with pytest.raises(ConfigError, match="ONLY_COMPONENT"):
        select_services(["rabbitmq"], "infra", only="redis")


def test_unknown_service_is_an_error():
    with pytest.raises(ConfigError, match="mongodb"):
        select_services(["mongodb"], "infra")


def test_order_ignores_dependencies_outside_the_run():
    redis = make_spec("redis", depends_on=["postgresql"])
    assert order_services([redis]) == [redis]


def test_order_is_stable_for_independent_services():
    a, b, c = make_spec("alpha"), make_spec("bravo"), make_spec("charlie", depends_on=["alpha"])
    assert [s.name for s in order_services([c, b, a])] == ["bravo", "alpha", "charlie"]


def test_dependency_cycle_is_an_error():
    a = make_spec("alpha", depends_on=["bravo"])
    b = make_spec("bravo", depends_on=["alpha"])
    with pytest.raises(ConfigError, match="cycle"):
        order_services([a, b])
