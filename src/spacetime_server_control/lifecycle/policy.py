"""Combination rules applied to health signals per phase and backend kind."""

from ..config.settings import ControllerPolicy
from .models import BackendKind, CombinationRule, HealthSnapshot

# While starting inside the grace window the endpoint may not be warmed up,
# so a positive backend signal alone confirms the start.
STARTUP_RULE = CombinationRule.BACKEND


def steady_rule(
    policy: ControllerPolicy, kind: BackendKind, marker_active: bool = False
) -> CombinationRule:
    """Rule for a steady-state pass.

    Inside a stop marker window both signals must agree, so lingering
    connections of a just-stopped process are not read as a live server.
    """
    if marker_active:
        return CombinationRule.ALL
    return policy.rule_for(kind)


def consults_probe(rule: CombinationRule) -> bool:
    """Whether the rule reads the probe signal at all."""
    return rule is not CombinationRule.BACKEND


def evaluate(
    rule: CombinationRule, backend_signal: bool, probe_signal: bool
) -> HealthSnapshot:
    return HealthSnapshot(
        backend_signal=backend_signal,
        probe_signal=probe_signal,
        combined=rule.combine(backend_signal, probe_signal),
        rule=rule,
    )
