"""
Default configuration values for deployment-sync.

Centralized defaults that can be overridden by environment variables or config files.
"""

from typing import Any, Dict
import copy

# Global default settings
DEFAULT_SETTINGS = {
    # Work dispatch
    "controller": {
        "worker_count": 2,
        "resync_period_seconds": 300.0,
        "reconcile_timeout_seconds": 30.0,
        "max_conflict_retries": 5
    },

    # Per-key retry backoff
    "backoff": {
        "base_seconds": 0.005,
        "max_seconds": 300.0
    },

    # Cluster access
    "kubernetes": {
        "in_cluster": False,
        "kubeconfig": None,
        "context": None,
        "watch_namespace": None
    },

    # DeploymentSync resource coordinates
    "intent": {
        "group": "sync.example.com",
        "version": "v1",
        "plural": "deploymentsyncs"
    },

    # Logging
    "logging": {
        "level": "INFO"
    }
}

# Nested config path -> flat ControllerSettings field
SETTINGS_FIELD_MAPPING = {
    "controller.worker_count": "worker_count",
    "controller.resync_period_seconds": "resync_period_seconds",
    "controller.reconcile_timeout_seconds": "reconcile_timeout_seconds",
    "controller.max_conflict_retries": "max_conflict_retries",
    "backoff.base_seconds": "backoff_base_seconds",
    "backoff.max_seconds": "backoff_max_seconds",
    "kubernetes.in_cluster": "in_cluster",
    "kubernetes.kubeconfig": "kubeconfig",
    "kubernetes.context": "context",
    "kubernetes.watch_namespace": "watch_namespace",
    "intent.group": "intent_group",
    "intent.version": "intent_version",
    "intent.plural": "intent_plural",
    "logging.level": "log_level",
}

# Environment variable mappings
ENV_VAR_MAPPING = {
    "DSYNC_WORKERS": "controller.worker_count",
    "DSYNC_RESYNC_PERIOD": "controller.resync_period_seconds",
    "DSYNC_RECONCILE_TIMEOUT": "controller.reconcile_timeout_seconds",
    "DSYNC_MAX_CONFLICT_RETRIES": "controller.max_conflict_retries",
    "DSYNC_BACKOFF_BASE": "backoff.base_seconds",
    "DSYNC_BACKOFF_MAX": "backoff.max_seconds",
    "DSYNC_IN_CLUSTER": "kubernetes.in_cluster",
    "KUBECONFIG": "kubernetes.kubeconfig",
    "DSYNC_CONTEXT": "kubernetes.context",
    "DSYNC_WATCH_NAMESPACE": "kubernetes.watch_namespace",
    "DSYNC_LOG_LEVEL": "logging.level",
}


def get_default_config() -> Dict[str, Any]:
    """Get a fresh copy of the default nested configuration"""
    return copy.deepcopy(DEFAULT_SETTINGS)
