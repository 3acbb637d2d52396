"""Field mapping rules injecting Distribution settings into templates."""

from __future__ import annotations

from typing import Any

from ...constants import (
    DEFAULT_HPA_CPU_UTILIZATION,
    DEFAULT_SERVER_PORT,
    DEFAULT_STORAGE_SIZE,
)
from ...models.domain.manifests import FieldMapping
from ...models.v1.distribution import Distribution

__all__ = ["build_field_mappings", "build_hpa_metrics"]

_INSTANCE = "app.kubernetes.io~1instance"


def build_field_mappings(distribution: Distribution) -> list[FieldMapping]:
    """Build the field mapping rules for a Distribution.

    Every rule may create its target field, and every rule that sets a value
    users may omit carries the default that yields a valid object.

    Parameters
    ----------
    distribution
        Distribution being rendered.

    Returns
    -------
    list of FieldMapping
        Rules for all rendered kinds.
    """
    name = distribution.name
    server = distribution.spec.server
    storage_size = server.storage.size if server.storage else None
    port = server.container_spec.port or None
    replicas = None
    if not distribution.autoscaling_enabled:
        replicas = distribution.spec.replicas

    rules = [
        ("PersistentVolumeClaim", [
            ("/spec/resources/requests/storage", storage_size,
             DEFAULT_STORAGE_SIZE),
        ]),
        ("Service", [
            ("/spec/ports/0/port", port, DEFAULT_SERVER_PORT),
            ("/spec/ports/0/targetPort", port, DEFAULT_SERVER_PORT),
            (f"/spec/selector/{_INSTANCE}", name, None),
        ]),
        ("Deployment", [
            ("/metadata/name", name, None),
            (f"/spec/selector/matchLabels/{_INSTANCE}", name, None),
            (f"/spec/template/metadata/labels/{_INSTANCE}", name, None),
            ("/spec/replicas", replicas, None),
            ("/spec/template/spec/serviceAccountName",
             distribution.service_account_name, None),
        ]),
        ("NetworkPolicy", [
            (f"/spec/podSelector/matchLabels/{_INSTANCE}", name, None),
        ]),
        ("ClusterRoleBinding", [
            ("/metadata/name", distribution.cluster_role_binding_name, None),
            ("/subjects/0/namespace", distribution.namespace, None),
            ("/subjects/0/name", distribution.service_account_name, None),
        ]),
        ("ServiceAccount", [
            ("/metadata/name", distribution.service_account_name, None),
        ]),
        ("Ingress", [
            ("/spec/rules/0/http/paths/0/backend/service/name",
             distribution.service_name, None),
            ("/spec/rules/0/http/paths/0/backend/service/port/number",
             port, DEFAULT_SERVER_PORT),
        ]),
    ]  # fmt: skip
    rules.extend(_autoscaling_rules(distribution))
    rules.extend(_disruption_budget_rules(distribution))

    return [
        FieldMapping(
            value=value,
            target_path=path,
            target_kind=kind,
            default=default,
            create_if_missing=True,
        )
        for kind, kind_rules in rules
        for path, value, default in kind_rules
    ]


def build_hpa_metrics(distribution: Distribution) -> list[dict[str, Any]]:
    """Build the metrics of the HorizontalPodAutoscaler.

    Parameters
    ----------
    distribution
        Distribution being rendered.

    Returns
    -------
    list of dict
        Resource utilization metrics. CPU utilization is targeted at a
        default percentage if no metric is configured.
    """
    autoscaling = distribution.spec.server.autoscaling
    targets = {}
    if autoscaling:
        if autoscaling.target_cpu_utilization_percentage:
            cpu = autoscaling.target_cpu_utilization_percentage
            targets["cpu"] = cpu
        if autoscaling.target_memory_utilization_percentage:
            memory = autoscaling.target_memory_utilization_percentage
            targets["memory"] = memory
    if not targets:
        targets["cpu"] = DEFAULT_HPA_CPU_UTILIZATION
    return [
        {
            "type": "Resource",
            "resource": {
                "name": resource,
                "target": {
                    "type": "Utilization",
                    "averageUtilization": utilization,
                },
            },
        }
        for resource, utilization in targets.items()
    ]


def _autoscaling_rules(
    distribution: Distribution,
) -> list[tuple[str, list[tuple[str, Any, Any]]]]:
    autoscaling = distribution.spec.server.autoscaling
    if not autoscaling or not autoscaling.max_replicas:
        return []
    min_replicas = max(
        1, distribution.spec.replicas, autoscaling.min_replicas or 1
    )
    max_replicas = max(autoscaling.max_replicas, min_replicas)
    return [
        ("HorizontalPodAutoscaler", [
            ("/spec/scaleTargetRef/name", distribution.name, None),
            ("/spec/minReplicas", min_replicas, None),
            ("/spec/maxReplicas", max_replicas, None),
            ("/spec/metrics", build_hpa_metrics(distribution), None),
        ]),
    ]  # fmt: skip


def _disruption_budget_rules(
    distribution: Distribution,
) -> list[tuple[str, list[tuple[str, Any, Any]]]]:
    pdb = distribution.spec.server.pod_disruption_budget
    min_available = pdb.min_available if pdb else None
    max_unavailable = pdb.max_unavailable if pdb else None
    if min_available is None and max_unavailable is None:
        min_available = 1
    selector = f"/spec/selector/matchLabels/{_INSTANCE}"
    return [
        ("PodDisruptionBudget", [
            (selector, distribution.name, None),
            ("/spec/minAvailable", min_available, None),
            ("/spec/maxUnavailable", max_unavailable, None),
        ]),
    ]  # fmt: skip
