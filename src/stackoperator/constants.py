"""Global constants."""

from datetime import timedelta
from pathlib import Path

__all__ = [
    "CA_BUNDLE_ANNOTATION",
    "CA_BUNDLE_MOUNT_PATH",
    "CA_BUNDLE_VOLUME",
    "CONFIGURATION_PATH",
    "CONFIG_MAP_KEY_PATTERN",
    "DEFAULT_CA_BUNDLE_KEY",
    "DEFAULT_CONTAINER_NAME",
    "DEFAULT_DISTRIBUTIONS",
    "DEFAULT_HPA_CPU_UTILIZATION",
    "DEFAULT_MEMORY_REQUEST",
    "DEFAULT_MOUNT_PATH",
    "DEFAULT_OPERATOR_NAMESPACE",
    "DEFAULT_SERVER_PORT",
    "DEFAULT_STORAGE_SIZE",
    "DISTRIBUTION_GROUP",
    "DISTRIBUTION_KIND",
    "DISTRIBUTION_PLURAL",
    "DISTRIBUTION_VERSION",
    "FEATURE_FLAGS_KEY",
    "FS_GROUP",
    "HEALTH_PROBE_TIMEOUT",
    "IMAGE_OVERRIDES_KEY",
    "INITIALIZING_REQUEUE_DELAY",
    "INSTANCE_LABEL",
    "KUBERNETES_REQUEST_TIMEOUT",
    "MANAGED_BY_LABEL",
    "MANAGED_BY_VALUE",
    "MANIFESTS_PATH",
    "MAX_CONFIG_MAP_KEY_LENGTH",
    "OPERATOR_CONFIG_MAP",
    "PART_OF_LABEL",
    "PART_OF_VALUE",
    "RESYNC_INTERVAL",
    "SCC_BINDING_SUFFIX",
    "SERVER_CONFIG_PATH",
    "SERVICE_ACCOUNT_SUFFIX",
    "STARTUP_SCRIPT",
    "USER_CONFIG_ANNOTATION",
    "USER_CONFIG_KEY",
    "USER_CONFIG_MOUNT_PATH",
]

CA_BUNDLE_ANNOTATION = "configmap.hash/ca-bundle"
"""Pod template annotation holding the content hash of the CA bundle."""

CA_BUNDLE_MOUNT_PATH = "/etc/ssl/certs/ca-bundle"
"""Directory in which the managed CA bundle is mounted in the server pod."""

CA_BUNDLE_VOLUME = "ca-bundle"
"""Name of the pod volume holding the managed CA bundle."""

CONFIGURATION_PATH = Path("/etc/stack-operator/config.yaml")
"""Default path to operator configuration."""

CONFIG_MAP_KEY_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9\-_.]*[a-zA-Z0-9])?$"
"""Pattern matching ConfigMap keys that may be consumed as files."""

DEFAULT_CA_BUNDLE_KEY = "ca-bundle.crt"
"""Key used for CA bundles if the Distribution does not name any keys.

This is also the key under which the concatenated certificates are stored in
the managed CA bundle ConfigMap.
"""

DEFAULT_CONTAINER_NAME = "llama-stack"
"""Name of the server container if not overridden."""

DEFAULT_DISTRIBUTIONS = {
    "starter": "docker.io/llamastack/distribution-starter:latest",
    "starter-gpu": "docker.io/llamastack/distribution-starter-gpu:latest",
    "meta-reference-gpu": (
        "docker.io/llamastack/distribution-meta-reference-gpu:latest"
    ),
    "postgres-demo": "docker.io/llamastack/distribution-postgres-demo:latest",
}
"""Default distribution catalog mapping names to images."""

DEFAULT_HPA_CPU_UTILIZATION = 80
"""Target CPU utilization percentage if autoscaling declares no metrics."""

DEFAULT_MEMORY_REQUEST = "1Gi"
"""Memory request for the server container if none is given."""

DEFAULT_MOUNT_PATH = "/.llama"
"""Mount path of the server storage volume if not overridden."""

DEFAULT_OPERATOR_NAMESPACE = "llama-stack-k8s-operator-system"
"""Namespace of the operator if it cannot be determined otherwise."""

DEFAULT_SERVER_PORT = 8321
"""Port on which the server listens if not overridden."""

DEFAULT_STORAGE_SIZE = "10Gi"
"""Size of the server persistent volume claim if not overridden."""

DISTRIBUTION_GROUP = "llamastack.io"
"""API group of the Distribution custom resource."""

DISTRIBUTION_KIND = "LlamaStackDistribution"
"""Kind of the Distribution custom resource."""

DISTRIBUTION_PLURAL = "llamastackdistributions"
"""Plural used in API paths for the Distribution custom resource."""

DISTRIBUTION_VERSION = "v1alpha1"
"""API version of the Distribution custom resource."""

FEATURE_FLAGS_KEY = "featureFlags"
"""Key of the feature flags in the operator ConfigMap."""

FS_GROUP = 1001
"""Filesystem group of the server pod."""

HEALTH_PROBE_TIMEOUT = timedelta(seconds=5)
"""Default timeout for requests to the server health endpoints."""

IMAGE_OVERRIDES_KEY = "image-overrides"
"""Key of the distribution image overrides in the operator ConfigMap."""

INITIALIZING_REQUEUE_DELAY = timedelta(seconds=10)
"""How long to wait before rechecking a Distribution that is initializing.

Replica convergence does not generate events on the Distribution itself, so
Distributions in the ``Initializing`` phase are polled at this interval.
"""

INSTANCE_LABEL = "app.kubernetes.io/instance"
"""Label identifying the Distribution that an object belongs to."""

KUBERNETES_REQUEST_TIMEOUT = timedelta(seconds=30)
"""How long to wait for one reconcile's sequence of Kubernetes API calls."""

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
"""Label marking objects managed by the operator."""

MANAGED_BY_VALUE = "llama-stack-operator"
"""Value of the managed-by label."""

MANIFESTS_PATH = Path(__file__).parent / "manifests" / "base"
"""Default template directory for rendered manifests."""

MAX_CONFIG_MAP_KEY_LENGTH = 253
"""Longest allowed ConfigMap key."""

OPERATOR_CONFIG_MAP = "llama-stack-operator-config"
"""Name of the operator-level ConfigMap in the operator namespace."""

PART_OF_LABEL = "app.kubernetes.io/part-of"
"""Label grouping all objects that make up the application."""

PART_OF_VALUE = "llama-stack"
"""Value of the part-of label."""

RESYNC_INTERVAL = timedelta(minutes=10)
"""How frequently to reconcile every Distribution regardless of events."""

SCC_BINDING_SUFFIX = "-scc-binding"
"""Suffix of the per-Distribution ClusterRoleBinding name."""

SERVER_CONFIG_PATH = "/etc/llama-stack/config.yaml"
"""Path from which the server reads its run configuration."""

SERVICE_ACCOUNT_SUFFIX = "-sa"
"""Suffix of the default per-Distribution ServiceAccount name."""

USER_CONFIG_ANNOTATION = "configmap.hash/user-config"
"""Pod template annotation holding the content hash of the user config."""

USER_CONFIG_KEY = "config.yaml"
"""Key under which inline user configuration is stored."""

USER_CONFIG_MOUNT_PATH = "/etc/llama-stack/"
"""Directory in which the user configuration ConfigMap is mounted."""

STARTUP_SCRIPT = """\
set -e
PORT=${LLS_PORT:-8321}
WORKERS=${LLS_WORKERS:-1}
if python -c "import llama_stack.core.server.server" 2>/dev/null; then
    exec uvicorn llama_stack.core.server.server:create_app \\
        --host 0.0.0.0 --port "$PORT" --workers "$WORKERS" --factory
fi
exec python3 -m llama_stack.distribution.server.server \\
    --config "$LLAMA_STACK_CONFIG"
"""
"""Startup command used when a user configuration is mounted.

The module path of the server changed between releases, so probe for the
newer layout first and fall back to the legacy entry point.
"""
