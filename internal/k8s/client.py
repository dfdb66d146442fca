"""Kubernetes dynamic client for Crossplane managed resources.

Handles:
  - Cluster connectivity (in-cluster or kubeconfig)
  - Server-side apply (SSA) of cluster-scoped managed resources, with
    fallback to create/replace on clients without SSA support

The rest of the system runs without a cluster; only the Crossplane backend
calls into this module.
"""

import logging

logger = logging.getLogger(__name__)

FIELD_MANAGER = "backup-policy-planner"

_dynamic_client = None


def init_client() -> bool:
    """Initialize the Kubernetes client. Returns True if successful."""
    global _dynamic_client

    if _dynamic_client is not None:
        return True
    try:
        from kubernetes import client as k8s_client, config as k8s_config
        from kubernetes.dynamic import DynamicClient
    except ImportError:
        logger.warning(
            "kubernetes Python package is not installed. "
            "Crossplane operations will be unavailable. Install with: pip install kubernetes"
        )
        return False

    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except k8s_config.ConfigException:
        try:
            k8s_config.load_kube_config()
            logger.info("Loaded kubeconfig from default location")
        except k8s_config.ConfigException:
            logger.warning(
                "No Kubernetes configuration found (neither in-cluster nor kubeconfig). "
                "Crossplane operations will be unavailable."
            )
            return False

    _dynamic_client = DynamicClient(k8s_client.ApiClient())
    return True


def _get_resource_for(api_version: str, kind: str):
    if _dynamic_client is None:
        raise RuntimeError("Kubernetes client is not initialized")
    try:
        return _dynamic_client.resources.get(api_version=api_version, kind=kind)
    except Exception as e:
        logger.error("Failed to discover CRD %s/%s: %s", api_version, kind, e)
        raise RuntimeError(
            f"{kind} ({api_version}) is not installed in the cluster; "
            "is the Crossplane AWS provider healthy?"
        ) from e


def apply_manifest(manifest: dict) -> dict:
    """Apply a cluster-scoped managed resource using server-side apply."""
    resource = _get_resource_for(manifest["apiVersion"], manifest["kind"])

    try:
        result = resource.server_side_apply(body=manifest, field_manager=FIELD_MANAGER)
        return result.to_dict()
    except AttributeError:
        # Older kubernetes client without server_side_apply
        pass

    name = manifest["metadata"]["name"]
    try:
        existing = resource.get(name=name)
        manifest = {**manifest, "metadata": {**manifest["metadata"],
                                             "resourceVersion": existing.metadata.resourceVersion}}
        result = resource.replace(body=manifest)
    except Exception as e:
        if hasattr(e, "status") and e.status == 404:
            result = resource.create(body=manifest)
        else:
            raise
    return result.to_dict()
