from copy import deepcopy
from typing import Any, MutableSequence, Sequence, Mapping

from jinja2 import Environment, select_autoescape

from tenant import Tenant, Role, TENANT_LABEL

RBAC_API_VERSION = 'rbac.authorization.k8s.io/v1'
RBAC_API_GROUP = 'rbac.authorization.k8s.io'

ALL_VERBS: Sequence[str] = ["get", "list", "watch", "create", "update", "patch", "delete"]

DEVELOPER_RULES: Sequence[dict] = [
    {
        "apiGroups": [""],
        "resources": ["pods", "pods/log", "pods/portforward", "services", "configmaps", "secrets"],
        "verbs": ALL_VERBS
    },
    {
        "apiGroups": ["apps"],
        "resources": ["deployments", "replicasets", "statefulsets"],
        "verbs": ALL_VERBS
    },
    {
        "apiGroups": ["batch"],
        "resources": ["jobs", "cronjobs"],
        "verbs": ALL_VERBS
    },
    {
        "apiGroups": ["networking.k8s.io"],
        "resources": ["ingresses"],
        "verbs": ALL_VERBS
    },
]

# metadata fields the API server owns; they must be stripped before an object can be re-created elsewhere
SERVER_MANAGED_METADATA: Sequence[str] = (
    'uid', 'resourceVersion', 'creationTimestamp', 'generation', 'selfLink', 'managedFields', 'ownerReferences',
    'deletionTimestamp', 'deletionGracePeriodSeconds',
)

WELCOME_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Welcome to {{ username }}'s Service</title>
  <style>
    body { font-family: Arial, sans-serif; line-height: 1.6; margin: 0; padding: 30px; background-color: #f5f5f5; }
    .container { max-width: 800px; margin: 0 auto; background-color: white; padding: 30px; border-radius: 8px; }
    .info-box { background-color: #f8f9fa; border-left: 4px solid #3498db; padding: 15px; margin: 20px 0; }
    .success { color: #27ae60; font-weight: bold; }
  </style>
</head>
<body>
  <div class="container">
    <h1>Welcome to {{ username }}'s Service</h1>
    <p>Your Kubernetes service is <span class="success">running successfully!</span></p>
    <div class="info-box">
      <h3>Account Information</h3>
      <p><strong>Username:</strong> {{ username }}</p>
      <p><strong>Namespace:</strong> {{ namespace }}</p>
      <p><strong>Subdomain:</strong> {{ subdomain }}</p>
    </div>
    <h3>Getting Started</h3>
    <p>To deploy and expose a service called "myapp" in your namespace:</p>
    <pre><code>kubectl create deployment myapp --image=your-image:tag
kubectl expose deployment myapp --port=80</code></pre>
    <p>Then route <code>https://{{ subdomain }}/myapp</code> to it with an ingress:</p>
    <pre><code>apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: myapp-ingress
  namespace: {{ namespace }}
spec:
  ingressClassName: {{ ingress_class }}
  tls:
  - hosts:
    - {{ subdomain }}
    secretName: {{ secret_name }}
  rules:
  - host: {{ subdomain }}
    http:
      paths:
      - path: /myapp
        pathType: Prefix
        backend:
          service:
            name: myapp
            port:
              number: 80</code></pre>
  </div>
</body>
</html>
"""

_environment: Environment = Environment(autoescape=select_autoescape(default=True, default_for_string=True))


def collect_differences(desired: Any, actual: Any,
                        path: MutableSequence[str] = None, diffs: MutableSequence[str] = None):
    """Lists the paths at which 'actual' differs from 'desired'. Keys present only in 'actual' are ignored."""
    diffs: MutableSequence[str] = [] if diffs is None else diffs
    path: MutableSequence[str] = [] if path is None else path

    if desired is None and actual is None:
        return diffs

    if (desired is not None and actual is None) or (desired is None and actual is not None):
        diffs.append(".".join(path))
        return diffs

    if type(desired) != type(actual):
        diffs.append(".".join(path))
        return diffs

    if isinstance(desired, dict) and isinstance(actual, dict):
        for key, desired_value in desired.items():
            path.append(key)
            try:
                if key not in actual:
                    diffs.append(".".join(path))
                    continue
                collect_differences(desired_value, actual[key], path, diffs)
            finally:
                path.pop()
        return diffs

    if isinstance(desired, list) and isinstance(actual, list):
        if len(desired) != len(actual):
            diffs.append(".".join(path))
        else:
            for index, desired_value in enumerate(desired):
                path.append(f"[{index}]")
                try:
                    collect_differences(desired_value, actual[index], path, diffs)
                finally:
                    path.pop()
        return diffs

    if desired != actual:
        diffs.append(".".join(path))

    return diffs


def tenant_labels(tenant: Tenant) -> dict:
    return {TENANT_LABEL: tenant.username}


def namespace_manifest(tenant: Tenant) -> dict:
    return {
        'apiVersion': 'v1',
        'kind': 'Namespace',
        'metadata': {
            'name': tenant.namespace,
            'labels': tenant_labels(tenant)
        }
    }


def developer_role_manifest(tenant: Tenant) -> dict:
    return {
        'apiVersion': RBAC_API_VERSION,
        'kind': 'Role',
        'metadata': {
            'name': Role.DEVELOPER.value,
            'namespace': tenant.namespace,
            'labels': tenant_labels(tenant)
        },
        'rules': deepcopy(list(DEVELOPER_RULES))
    }


def role_ref(tenant: Tenant) -> dict:
    return {'apiGroup': RBAC_API_GROUP, 'kind': tenant.role.role_kind, 'name': tenant.role.value}


def role_binding_manifest(tenant: Tenant) -> dict:
    return {
        'apiVersion': RBAC_API_VERSION,
        'kind': 'RoleBinding',
        'metadata': {
            'name': tenant.binding_name,
            'namespace': tenant.namespace,
            'labels': tenant_labels(tenant)
        },
        'subjects': [{'kind': 'User', 'name': tenant.username, 'apiGroup': RBAC_API_GROUP}],
        'roleRef': role_ref(tenant)
    }


def relocated_secret_manifest(secret: Mapping[str, Any], namespace: str) -> dict:
    """Returns a copy of the given secret, stripped of server-managed metadata and moved into 'namespace'."""
    manifest: dict = deepcopy(dict(secret))
    manifest.pop('status', None)
    metadata: dict = manifest.setdefault('metadata', {})
    for field in SERVER_MANAGED_METADATA:
        metadata.pop(field, None)
    annotations: dict = metadata.get('annotations') or {}
    annotations.pop('kubectl.kubernetes.io/last-applied-configuration', None)
    if annotations:
        metadata['annotations'] = annotations
    else:
        metadata.pop('annotations', None)
    metadata['namespace'] = namespace
    return manifest


def render_welcome_page(tenant: Tenant, ingress_class: str, secret_name: str) -> str:
    return _environment.from_string(WELCOME_PAGE).render(username=tenant.username,
                                                         namespace=tenant.namespace,
                                                         subdomain=tenant.subdomain,
                                                         ingress_class=ingress_class,
                                                         secret_name=secret_name)


def workload_name(tenant: Tenant) -> str:
    return f"{tenant.username}-nginx"


def welcome_config_map_manifest(tenant: Tenant, ingress_class: str, secret_name: str) -> dict:
    return {
        'apiVersion': 'v1',
        'kind': 'ConfigMap',
        'metadata': {
            'name': f"{workload_name(tenant)}-config",
            'namespace': tenant.namespace,
            'labels': tenant_labels(tenant)
        },
        'data': {'index.html': render_welcome_page(tenant, ingress_class, secret_name)}
    }


def deployment_manifest(tenant: Tenant, image: str) -> dict:
    name: str = workload_name(tenant)
    return {
        'apiVersion': 'apps/v1',
        'kind': 'Deployment',
        'metadata': {'name': name, 'namespace': tenant.namespace, 'labels': tenant_labels(tenant)},
        'spec': {
            'replicas': 1,
            'selector': {'matchLabels': {'app': name}},
            'template': {
                'metadata': {'labels': {'app': name}},
                'spec': {
                    'containers': [{
                        'name': 'nginx',
                        'image': image,
                        'ports': [{'containerPort': 80}],
                        'volumeMounts': [{
                            'name': 'welcome-page',
                            'mountPath': '/usr/share/nginx/html/index.html',
                            'subPath': 'index.html'
                        }]
                    }],
                    'volumes': [{'name': 'welcome-page', 'configMap': {'name': f"{name}-config"}}]
                }
            }
        }
    }


def service_manifest(tenant: Tenant) -> dict:
    name: str = workload_name(tenant)
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': {'name': name, 'namespace': tenant.namespace, 'labels': tenant_labels(tenant)},
        'spec': {
            'type': 'ClusterIP',
            'selector': {'app': name},
            'ports': [{'port': 80, 'targetPort': 80}]
        }
    }


def ingress_manifest(tenant: Tenant, ingress_class: str, secret_name: str) -> dict:
    return {
        'apiVersion': 'networking.k8s.io/v1',
        'kind': 'Ingress',
        'metadata': {
            'name': f"{tenant.username}-ingress",
            'namespace': tenant.namespace,
            'labels': tenant_labels(tenant)
        },
        'spec': {
            'ingressClassName': ingress_class,
            'tls': [{'hosts': [tenant.subdomain], 'secretName': secret_name}],
            'rules': [{
                'host': tenant.subdomain,
                'http': {
                    'paths': [{
                        'path': '/',
                        'pathType': 'Prefix',
                        'backend': {'service': {'name': workload_name(tenant), 'port': {'number': 80}}}
                    }]
                }
            }]
        }
    }


def ingress_hosts(ingress: Mapping[str, Any]) -> Sequence[str]:
    spec: Mapping[str, Any] = ingress.get('spec') or {}
    return [rule['host'] for rule in spec.get('rules') or [] if 'host' in rule]
