"""
Desired state resolver. Pure: no I/O, same inputs give the same DesiredState.

All service credentials share one master secret unless an override exists.
Lookup order per credential key: '<service>.<key>', then '<service>', then
the master secret.
"""
from release_converger.errors import ConfigError
from release_converger.models import ConvergePolicy, DesiredState, ServiceSpec


def resolve_credential(spec: ServiceSpec, key: str, policy: ConvergePolicy) -> str:
    overrides = policy.credential_overrides
    value = overrides.get(f"{spec.name}.{key}") or overrides.get(spec.name) or policy.master_secret
    if not value:
        raise ConfigError(
            f"{spec.name}: no value for credential '{key}' "
            f"(set the master secret or a {spec.name} override)"
        )
    return value


def resolve(spec: ServiceSpec, policy: ConvergePolicy) -> DesiredState:
    return DesiredState(
        target_secret_values={key: resolve_credential(spec, key, policy) for key in spec.credential_keys},
        target_chart_version=policy.chart_versions.get(spec.name, spec.chart_version),
        target_image_tag=policy.image_tags.get(spec.name, spec.image_tag),
        cleanup_mode=policy.cleanup_mode,
        force_install=policy.force_install or spec.name in policy.force_services,
    )
