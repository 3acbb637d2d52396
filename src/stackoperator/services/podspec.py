"""Construction of the pod spec of the server Deployment."""

from __future__ import annotations

from typing import Any

from ..constants import (
    CA_BUNDLE_MOUNT_PATH,
    CA_BUNDLE_VOLUME,
    DEFAULT_CA_BUNDLE_KEY,
    DEFAULT_CONTAINER_NAME,
    DEFAULT_MEMORY_REQUEST,
    DEFAULT_MOUNT_PATH,
    DEFAULT_SERVER_PORT,
    FS_GROUP,
    INSTANCE_LABEL,
    SERVER_CONFIG_PATH,
    STARTUP_SCRIPT,
    USER_CONFIG_MOUNT_PATH,
)
from ..models.v1.distribution import Distribution

__all__ = ["PodSpecBuilder"]

_STORAGE_VOLUME = "lls-storage"
_USER_CONFIG_VOLUME = "user-config"
_TOPOLOGY_KEYS = (
    "topology.kubernetes.io/region",
    "topology.kubernetes.io/zone",
    "kubernetes.io/hostname",
)


class PodSpecBuilder:
    """Construct the pod spec fragment merged into the server Deployment.

    The result is in the same dictionary form as the rendered templates so
    that user-supplied fragments (environment variables, volumes, topology
    spread constraints) can be included without conversion.
    """

    def build(
        self, distribution: Distribution, image: str, *, ca_bundle: bool
    ) -> dict[str, Any]:
        """Build the pod spec.

        Parameters
        ----------
        distribution
            Distribution being reconciled.
        image
            Resolved server image.
        ca_bundle
            Whether a managed CA bundle ConfigMap will be mounted.

        Returns
        -------
        dict
            Fields of the pod spec, using Kubernetes camelCase names.
        """
        overrides = distribution.spec.server.pod_overrides
        volumes = self._build_volumes(distribution, ca_bundle=ca_bundle)
        container = self._build_container(
            distribution, image, ca_bundle=ca_bundle
        )
        pod_spec: dict[str, Any] = {
            "containers": [container],
            "securityContext": {"fsGroup": FS_GROUP},
            "serviceAccountName": distribution.service_account_name,
            "volumes": volumes,
        }
        if overrides:
            grace = overrides.termination_grace_period_seconds
            if grace is not None:
                pod_spec["terminationGracePeriodSeconds"] = grace
        constraints = self._build_topology_spread(distribution)
        if constraints:
            pod_spec["topologySpreadConstraints"] = constraints
        if distribution.spec.replicas > 1:
            pod_spec["affinity"] = self._build_affinity(distribution)
        return pod_spec

    def _build_affinity(self, distribution: Distribution) -> dict[str, Any]:
        """Prefer spreading server pods across nodes."""
        selector = {"matchLabels": {INSTANCE_LABEL: distribution.name}}
        term = {
            "weight": 100,
            "podAffinityTerm": {
                "labelSelector": selector,
                "topologyKey": "kubernetes.io/hostname",
            },
        }
        return {
            "podAntiAffinity": {
                "preferredDuringSchedulingIgnoredDuringExecution": [term]
            }
        }

    def _build_container(
        self, distribution: Distribution, image: str, *, ca_bundle: bool
    ) -> dict[str, Any]:
        server = distribution.spec.server
        container_spec = server.container_spec
        port = distribution.container_port or DEFAULT_SERVER_PORT
        container: dict[str, Any] = {
            "name": container_spec.name or DEFAULT_CONTAINER_NAME,
            "image": image,
            "ports": [{"containerPort": port}],
            "resources": self._build_resources(distribution),
            "env": self._build_env(distribution, port, ca_bundle=ca_bundle),
            "volumeMounts": self._build_volume_mounts(
                distribution, ca_bundle=ca_bundle
            ),
            "startupProbe": {
                "httpGet": {"path": "/v1/health", "port": port},
                "initialDelaySeconds": 15,
                "failureThreshold": 30,
                "periodSeconds": 3,
                "timeoutSeconds": 1,
            },
        }

        # With a user configuration, the image entry point would ignore the
        # mounted file, so start the server explicitly.
        if distribution.user_config_map:
            container["command"] = ["/bin/sh", "-c", STARTUP_SCRIPT]
            container["args"] = []
        if container_spec.command:
            container["command"] = list(container_spec.command)
        if container_spec.args:
            container["args"] = list(container_spec.args)
        return container

    def _build_env(
        self, distribution: Distribution, port: int, *, ca_bundle: bool
    ) -> list[dict[str, Any]]:
        server = distribution.spec.server
        mount_path = DEFAULT_MOUNT_PATH
        if server.storage and server.storage.mount_path:
            mount_path = server.storage.mount_path
        env = [{"name": "HF_HOME", "value": mount_path}]
        if ca_bundle:
            path = f"{CA_BUNDLE_MOUNT_PATH}/{DEFAULT_CA_BUNDLE_KEY}"
            env.append({"name": "SSL_CERT_FILE", "value": path})
        if server.workers:
            env.append({"name": "LLS_WORKERS", "value": str(server.workers)})
        env.append({"name": "LLS_PORT", "value": str(port)})
        if distribution.user_config_map:
            path = SERVER_CONFIG_PATH
            env.append({"name": "LLAMA_STACK_CONFIG", "value": path})

        # User settings win over the defaults of the same name.
        user_env = server.container_spec.env
        overridden = {e.get("name") for e in user_env}
        env = [e for e in env if e["name"] not in overridden]
        env.extend(dict(e) for e in user_env)
        return env

    def _build_resources(self, distribution: Distribution) -> dict[str, Any]:
        server = distribution.spec.server
        resources = server.container_spec.resources
        requests = dict(resources.requests) if resources else {}
        limits = dict(resources.limits) if resources else {}
        if server.workers:
            requests.setdefault("cpu", str(server.workers))
        requests.setdefault("memory", DEFAULT_MEMORY_REQUEST)

        # Each worker is a separate process, so without explicit limits the
        # requests are also enforced as limits.
        if server.workers:
            for resource, amount in requests.items():
                limits.setdefault(resource, amount)
        result: dict[str, Any] = {"requests": requests}
        if limits:
            result["limits"] = limits
        return result

    def _build_topology_spread(
        self, distribution: Distribution
    ) -> list[dict[str, Any]]:
        server = distribution.spec.server
        if server.topology_spread_constraints:
            return [dict(c) for c in server.topology_spread_constraints]
        if distribution.spec.replicas <= 1:
            return []
        selector = {"matchLabels": {INSTANCE_LABEL: distribution.name}}
        return [
            {
                "maxSkew": 1,
                "topologyKey": key,
                "whenUnsatisfiable": "ScheduleAnyway",
                "labelSelector": selector,
            }
            for key in _TOPOLOGY_KEYS
        ]

    def _build_volume_mounts(
        self, distribution: Distribution, *, ca_bundle: bool
    ) -> list[dict[str, Any]]:
        server = distribution.spec.server
        mount_path = DEFAULT_MOUNT_PATH
        if server.storage and server.storage.mount_path:
            mount_path = server.storage.mount_path
        mounts: list[dict[str, Any]] = [
            {"name": _STORAGE_VOLUME, "mountPath": mount_path}
        ]
        if distribution.user_config_map:
            mounts.append(
                {
                    "name": _USER_CONFIG_VOLUME,
                    "mountPath": USER_CONFIG_MOUNT_PATH,
                    "readOnly": True,
                }
            )
        if ca_bundle:
            mounts.append(
                {
                    "name": CA_BUNDLE_VOLUME,
                    "mountPath": CA_BUNDLE_MOUNT_PATH,
                    "readOnly": True,
                }
            )
        if server.pod_overrides:
            mounts.extend(dict(m) for m in server.pod_overrides.volume_mounts)
        return mounts

    def _build_volumes(
        self, distribution: Distribution, *, ca_bundle: bool
    ) -> list[dict[str, Any]]:
        server = distribution.spec.server
        if server.storage:
            claim = {"claimName": f"{distribution.name}-pvc"}
            storage = {"name": _STORAGE_VOLUME, "persistentVolumeClaim": claim}
        else:
            storage = {"name": _STORAGE_VOLUME, "emptyDir": {}}
        volumes = [storage]

        user_config = distribution.user_config_volume
        if user_config:
            source = {"name": user_config}
            volumes.append({"name": _USER_CONFIG_VOLUME, "configMap": source})
        if ca_bundle:
            key = DEFAULT_CA_BUNDLE_KEY
            item = {"key": key, "path": key}
            name = distribution.managed_ca_bundle_name
            source = {"name": name, "items": [item]}
            volumes.append({"name": CA_BUNDLE_VOLUME, "configMap": source})
        if server.pod_overrides:
            volumes.extend(dict(v) for v in server.pod_overrides.volumes)
        return volumes
